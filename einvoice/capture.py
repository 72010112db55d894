"""Still-frame QR capture: decode every QR in one photo and track LEFT/RIGHT halves.

Decoders (all optional, tried in order and merged):
- OpenCV QRCodeDetector (multi)
- ZXing via zxing-cpp
- pyzbar (needs the zbar system library: `brew install zbar`)

Each decoded payload keeps its corner points so the reconciler can fall back to
"which one is further left" when the payload content doesn't tell.
"""

from __future__ import annotations

import contextlib
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from einvoice.console import log_info, log_warn
from einvoice.models import Invoice
from einvoice.qr_reconcile import (
    STATUS_COMPLETE,
    STATUS_NONE,
    BoundingBox,
    Point,
    ReconciledPair,
    ScanResult,
    dedupe_scan_results,
    reconcile,
)
from einvoice.tw_einvoice_qr import parse_einvoice_qr_codes


class CaptureError(RuntimeError):
    """Camera or image failure; shown to the user, never retried by the parser."""


def _points_from_array(quad: Any, scale: float = 1.0) -> tuple[Point, ...]:
    pts: list[Point] = []
    for p in quad:
        pts.append(Point(x=float(p[0]) / scale, y=float(p[1]) / scale))
    return tuple(pts)


def _decode_opencv(image_bgr: Any) -> list[ScanResult]:
    import cv2

    out: list[ScanResult] = []
    detector = cv2.QRCodeDetector()

    variants: list[tuple[Any, float]] = [(image_bgr, 1.0)]
    if len(getattr(image_bgr, "shape", ())) == 3:
        gray = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2GRAY)
        variants.append((gray, 1.0))
    else:
        gray = image_bgr
    # upscale helps when each QR is small in the frame
    variants.append((cv2.resize(gray, None, fx=2.0, fy=2.0, interpolation=cv2.INTER_CUBIC), 2.0))

    for img, scale in variants:
        try:
            ok, decoded, points, _ = detector.detectAndDecodeMulti(img)
        except cv2.error:
            continue
        if not ok or not decoded or points is None:
            continue
        for txt, quad in zip(decoded, points):
            if txt:
                out.append(ScanResult(data=txt, corner_points=_points_from_array(quad, scale)))
        if len(dedupe_scan_results(out)) >= 2:
            break
    return out


def _decode_zxing(image_bgr: Any) -> list[ScanResult]:
    import zxingcpp  # type: ignore

    out: list[ScanResult] = []
    for r in zxingcpp.read_barcodes(image_bgr, formats=zxingcpp.BarcodeFormat.QRCode, try_rotate=True, try_downscale=True):
        text = getattr(r, "text", "") or ""
        pos = getattr(r, "position", None)
        corners: tuple[Point, ...] = ()
        if pos is not None:
            corners = tuple(
                Point(x=float(c.x), y=float(c.y))
                for c in (pos.top_left, pos.top_right, pos.bottom_right, pos.bottom_left)
            )
        out.append(ScanResult(data=text, corner_points=corners))
    return out


def _decode_pyzbar(image_bgr: Any) -> list[ScanResult]:
    from pyzbar.pyzbar import ZBarSymbol, decode

    # silence zbar's stderr warning spam
    with open(os.devnull, "w") as devnull, contextlib.redirect_stderr(devnull):
        decoded_objs = decode(image_bgr, symbols=[ZBarSymbol.QRCODE])

    out: list[ScanResult] = []
    for obj in decoded_objs:
        text = obj.data.decode("utf-8", errors="replace")
        corners = tuple(Point(x=float(p.x), y=float(p.y)) for p in (obj.polygon or ()))
        rect = getattr(obj, "rect", None)
        bounds = None
        if rect is not None:
            bounds = BoundingBox(origin=Point(x=float(rect.left), y=float(rect.top)), width=float(rect.width), height=float(rect.height))
        out.append(ScanResult(data=text, corner_points=corners, bounds=bounds))
    return out


DECODERS: tuple[tuple[str, Callable[[Any], list[ScanResult]]], ...] = (
    ("opencv", _decode_opencv),
    ("zxing", _decode_zxing),
    ("pyzbar", _decode_pyzbar),
)


def decode_scan_results(
    image_bgr: Any,
    decoders: Iterable[tuple[str, Callable[[Any], list[ScanResult]]]] = DECODERS,
) -> list[ScanResult]:
    """Decode all QR codes visible in one still frame.

    Decoders that are not installed are skipped. Stops once two distinct
    payloads are found (an e-invoice has exactly two QR codes).
    """
    hits: list[ScanResult] = []
    for name, decoder in decoders:
        try:
            found = decoder(image_bgr)
        except ImportError:
            continue
        except Exception as e:
            log_warn(f"{name} decode failed: {e}")
            continue
        hits = dedupe_scan_results([*hits, *found])
        if len(hits) >= 2:
            break
    return hits


def load_image(path: Path) -> Any:
    import cv2

    img = cv2.imread(str(path))
    if img is None:
        raise CaptureError(f"Cannot read image: {path}")
    return img


class ScanSession:
    """Accumulates LEFT/RIGHT halves across still-frame captures.

    Only one capture runs at a time, and a short cool-down after each capture
    drops repeated triggers.
    """

    def __init__(self, *, cooldown_seconds: float = 0.6, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._in_flight = False
        self._cooldown_until = 0.0
        self.left: Optional[str] = None
        self.right: Optional[str] = None
        self.provisional = False
        self.last_pair: Optional[ReconciledPair] = None

    @property
    def ready(self) -> bool:
        return self.left is not None and self.right is not None

    @property
    def busy(self) -> bool:
        return self._in_flight or self._clock() < self._cooldown_until

    def reset(self) -> None:
        self.left = None
        self.right = None
        self.provisional = False
        self.last_pair = None

    def capture(self, decode: Callable[[], list[ScanResult]]) -> Optional[ReconciledPair]:
        """Run one capture+decode; returns None when the trigger was debounced.

        Errors from `decode` (e.g. CaptureError) propagate to the caller.
        """
        if self.busy:
            log_warn("Capture already in progress; ignoring trigger")
            return None

        self._in_flight = True
        try:
            pair = reconcile(decode())
            self._apply(pair)
            self.last_pair = pair
            return pair
        finally:
            self._in_flight = False
            self._cooldown_until = self._clock() + self.cooldown_seconds

    def _apply(self, pair: ReconciledPair) -> None:
        if pair.status == STATUS_NONE:
            return
        if pair.status == STATUS_COMPLETE:
            self.left = pair.left
            self.right = pair.right
            self.provisional = pair.provisional
            if pair.provisional:
                log_warn("LEFT/RIGHT assigned by scan order only (no marker, no geometry)")
            return
        # Single half: keep whatever we already had.
        if pair.left is not None:
            if self.left is None:
                self.left = pair.left
            elif pair.left != self.left:
                log_warn("A different LEFT QR was read; keeping the first one (reset to start over)")
        if pair.right is not None:
            if self.right is None:
                self.right = pair.right
            elif pair.right != self.right:
                log_warn("A different RIGHT QR was read; keeping the first one (reset to start over)")

    def hint(self) -> str:
        if self.ready:
            return "Both QR codes captured; ready to save"
        if self.left is None and self.right is None:
            return "Put both QR codes in the frame and capture"
        if self.right is None:
            return "Only the LEFT (main) QR was read; capture again with both QR codes in frame"
        return "Only the RIGHT (continuation) QR was read; capture again with both QR codes in frame"

    def to_invoice(self, *, allow_single: bool = False, now: Optional[datetime] = None) -> Invoice:
        if self.left is None:
            raise RuntimeError("LEFT QR not captured yet")
        if self.right is None and not allow_single:
            raise RuntimeError("RIGHT QR not captured yet")
        inv = parse_einvoice_qr_codes(self.left, self.right, now=now)
        log_info(f"Parsed invoice {inv.id}: items={len(inv.items)} total={inv.amount_str() or '-'}")
        return inv
