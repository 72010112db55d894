"""Taiwan e-invoice (電子發票) QR-code parsing helpers.

A Taiwan e-invoice paper carries two QR codes. The LEFT code holds the header
and the first items; the RIGHT code continues the same colon-separated payload
and starts with the continuation marker '**'. The two halves concatenate
directly:

    <header...>:<itemName>:<qty>:<unitPrice>:<itemName>:<qty>:<unitPrice>:...

This module merges the halves, finds where the item triples start and stops
at the first triple that breaks the pattern. It never raises for malformed
payloads; the worst case is an invoice with no items and the raw text kept
for inspection.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from einvoice.models import Invoice, InvoiceItem


CONTINUATION_MARKER = "**"
INVOICE_ID_PREFIX = "inv_"

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_DIGITS_RE = re.compile(r"\d+")
_SEPARATOR_CHARS = frozenset("*-_=")


def _to_decimal(value: str) -> Optional[Decimal]:
    try:
        return Decimal(value)
    except (InvalidOperation, ValueError):
        return None


def looks_like_number(value: str) -> bool:
    """Signed decimal without exponent or thousands separators."""
    return bool(_NUMBER_RE.fullmatch((value or "").strip()))


def looks_like_item_name(value: str) -> bool:
    """Reject stray quantities/header digits and separator artifacts like '**' or '---'."""
    s = (value or "").strip()
    if not s:
        return False
    if _DIGITS_RE.fullmatch(s):
        return False
    if set(s) <= _SEPARATOR_CHARS:
        return False
    return True


def is_continuation_marker(qr_text: str) -> bool:
    """Return True if the payload is a RIGHT-half continuation ('**' prefix)."""
    return (qr_text or "").strip().startswith(CONTINUATION_MARKER)


def strip_continuation_marker(qr_text: str) -> str:
    s = (qr_text or "").strip()
    if s.startswith(CONTINUATION_MARKER):
        return s[len(CONTINUATION_MARKER):]
    return s


def _score_readability(text: str) -> tuple[int, int, int]:
    """Score a string for 'looks like human-readable Traditional Chinese'.

    Higher is better.
    Returns (cjk_count, ascii_count, weird_count).
    """
    s = text or ""
    cjk = 0
    ascii_printable = 0
    weird = 0
    for ch in s:
        o = ord(ch)
        if 0x4E00 <= o <= 0x9FFF:  # CJK Unified Ideographs
            cjk += 1
        elif 0x20 <= o <= 0x7E:
            ascii_printable += 1
        elif 0xFF61 <= o <= 0xFF9F:  # Halfwidth Katakana (common in mojibake)
            weird += 2
        else:
            weird += 1
    return cjk, ascii_printable, weird


def _fix_mojibake_text_best_effort(text: str) -> str:
    """Try to repair common mojibake for item names.

    Some decoders yield CP950/Big5 bytes mis-decoded as CP932/Shift-JIS
    (characters like '､' or halfwidth katakana). Re-encode with the wrong codec,
    decode with the likely right one, and keep the candidate only if it has
    more CJK characters and no more weird symbols.
    """
    s = (text or "").strip()
    if not s:
        return ""

    base_score = _score_readability(s)
    # Pure ASCII or already-readable names are left alone.
    if base_score[2] == 0:
        return s

    candidates: list[str] = [s]
    for wrong in ("cp932", "shift_jis"):
        for right in ("cp950", "big5"):
            try:
                candidates.append(s.encode(wrong, errors="strict").decode(right, errors="strict"))
            except (UnicodeEncodeError, UnicodeDecodeError):
                continue

    def _key(x: str) -> tuple[int, int, int, int]:
        cjk, ascii_printable, weird = _score_readability(x)
        return (cjk, -weird, ascii_printable, -len(x))

    best = max(candidates, key=_key)
    best_score = _score_readability(best)
    if best_score[0] > base_score[0] and best_score[2] <= base_score[2]:
        return best
    return s


def merge_payload(raw_left: str, raw_right: Optional[str] = None) -> str:
    """Trim both halves, drop the RIGHT marker and concatenate with no separator."""
    left = (raw_left or "").strip()
    right = strip_continuation_marker(raw_right or "")
    return left + right


def tokenize_payload(payload: str) -> list[str]:
    return [s.strip() for s in (payload or "").split(":") if s.strip()]


def find_item_start(tokens: list[str]) -> Optional[int]:
    """Index of the first (name, qty, price) triple, or None if there is none."""
    for i in range(len(tokens) - 2):
        if looks_like_item_name(tokens[i]) and looks_like_number(tokens[i + 1]) and looks_like_number(tokens[i + 2]):
            return i
    return None


def extract_items(tokens: list[str], start: Optional[int]) -> tuple[InvoiceItem, ...]:
    """Consume (name, qty, price) groups from `start` until the pattern breaks.

    The first bad group ends extraction; whatever follows is treated as trailer
    data. A trailing group with fewer than three tokens is ignored.
    """
    if start is None:
        return ()

    items: list[InvoiceItem] = []
    i = start
    while i + 2 < len(tokens):
        name = tokens[i]
        qty = _to_decimal(tokens[i + 1]) if looks_like_number(tokens[i + 1]) else None
        unit = _to_decimal(tokens[i + 2]) if looks_like_number(tokens[i + 2]) else None
        if not looks_like_item_name(name) or qty is None or unit is None:
            break
        if not qty.is_finite() or not unit.is_finite():
            break
        items.append(InvoiceItem(name=_fix_mojibake_text_best_effort(name), quantity=qty, unit_price=unit))
        i += 3
    return tuple(items)


def compute_total(items: Iterable[InvoiceItem]) -> Optional[Decimal]:
    """Sum of qty * unit price; None when there is nothing to sum."""
    items = list(items)
    if not items:
        return None
    total = sum((it.subtotal for it in items), Decimal("0"))
    if not total.is_finite():
        return None
    return total


def invoice_id_for_payload(payload: str) -> str:
    """Stable id for a merged payload; re-scanning the same invoice yields the same id."""
    digest = hashlib.sha256((payload or "").encode("utf-8", errors="surrogatepass")).hexdigest()
    return f"{INVOICE_ID_PREFIX}{digest[:16]}"


def parse_einvoice_qr_codes(
    raw_left: str,
    raw_right: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Invoice:
    """Parse the LEFT (and optional RIGHT) QR payloads into an Invoice.

    `raw_left` / `raw_right` are stored verbatim; parsing works on the trimmed,
    marker-stripped concatenation.
    """
    if raw_left is None:
        raise ValueError("raw_left is required")

    payload = merge_payload(raw_left, raw_right)
    tokens = tokenize_payload(payload)
    items = extract_items(tokens, find_item_start(tokens))

    created_at = now or datetime.now(timezone.utc)
    # stored as epoch ms
    created_at = created_at.replace(microsecond=created_at.microsecond // 1000 * 1000)

    return Invoice(
        id=invoice_id_for_payload(payload),
        items=items,
        total=compute_total(items),
        raw_left=raw_left,
        raw_right=raw_right,
        created_at=created_at,
    )
