"""Decide which decoded QR payload is the LEFT half and which is the RIGHT half.

Rules, tried in order for two payloads from the same still frame:
1. content: a payload starting with '**' is RIGHT, anything else is LEFT
2. spatial: when both classify the same, the one further left in the frame is LEFT
3. order: without geometry, first decoded = LEFT, second = RIGHT (provisional)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from einvoice.tw_einvoice_qr import is_continuation_marker, strip_continuation_marker


LEFT = "LEFT"
RIGHT = "RIGHT"

STATUS_NONE = "none"
STATUS_PARTIAL = "partial"
STATUS_COMPLETE = "complete"


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class BoundingBox:
    origin: Point
    width: float
    height: float


@dataclass(frozen=True)
class ScanResult:
    data: str
    corner_points: tuple[Point, ...] = ()
    bounds: Optional[BoundingBox] = None


@dataclass(frozen=True)
class ReconciledPair:
    left: Optional[str] = None
    right: Optional[str] = None
    # "content" | "spatial" | "order" | "single" | "" (nothing detected)
    method: str = ""

    @property
    def status(self) -> str:
        if self.left is None and self.right is None:
            return STATUS_NONE
        if self.left is None or self.right is None:
            return STATUS_PARTIAL
        return STATUS_COMPLETE

    @property
    def provisional(self) -> bool:
        return self.method == "order"


def classify_part(qr_text: str) -> str:
    return RIGHT if is_continuation_marker(qr_text) else LEFT


def center_x(result: ScanResult) -> Optional[float]:
    """Horizontal center from corner points (>= 2), else from the bounding box."""
    cps = result.corner_points or ()
    if len(cps) >= 2:
        return sum(p.x for p in cps) / len(cps)
    b = result.bounds
    if b is not None:
        return b.origin.x + b.width / 2
    return None


def dedupe_scan_results(results: Iterable[ScanResult]) -> list[ScanResult]:
    """Drop blank payloads and keep the first result per trimmed payload text."""
    seen: set[str] = set()
    out: list[ScanResult] = []
    for r in results:
        d = (r.data or "").strip()
        if not d or d in seen:
            continue
        seen.add(d)
        out.append(r)
    return out


def _pair(left_raw: str, right_raw: str, method: str) -> ReconciledPair:
    return ReconciledPair(left=left_raw, right=strip_continuation_marker(right_raw), method=method)


def reconcile_two(a: ScanResult, b: ScanResult) -> ReconciledPair:
    a_data = (a.data or "").strip()
    b_data = (b.data or "").strip()

    a_part = classify_part(a_data)
    b_part = classify_part(b_data)
    if a_part != b_part:
        if a_part == LEFT:
            return _pair(a_data, b_data, "content")
        return _pair(b_data, a_data, "content")

    ax = center_x(a)
    bx = center_x(b)
    if ax is not None and bx is not None:
        if ax <= bx:
            return _pair(a_data, b_data, "spatial")
        return _pair(b_data, a_data, "spatial")

    # Weak: scan order only. Callers should treat this pair as provisional.
    return _pair(a_data, b_data, "order")


def reconcile(results: Iterable[ScanResult]) -> ReconciledPair:
    """Resolve LEFT/RIGHT roles for the QR results decoded from one frame.

    0 results -> nothing detected; 1 result -> only that half is populated;
    2+ results -> the first two distinct payloads are paired.
    """
    uniq = dedupe_scan_results(results)
    if not uniq:
        return ReconciledPair()

    if len(uniq) == 1:
        raw = (uniq[0].data or "").strip()
        if classify_part(raw) == LEFT:
            return ReconciledPair(left=raw, method="single")
        return ReconciledPair(right=strip_continuation_marker(raw), method="single")

    return reconcile_two(uniq[0], uniq[1])
