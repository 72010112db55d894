"""Plain data records shared by the parser, the store and the CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


def format_decimal(x: Decimal) -> str:
    # avoid trailing zeros
    text = format(x.normalize(), "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


@dataclass(frozen=True)
class InvoiceItem:
    name: str
    quantity: Decimal
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class Invoice:
    id: str
    raw_left: str
    created_at: datetime
    items: tuple[InvoiceItem, ...] = ()
    total: Optional[Decimal] = None
    raw_right: Optional[str] = None

    # Header fields are reserved; the QR parser leaves them empty.
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    random_number: Optional[str] = None
    seller_identifier: Optional[str] = None

    def amount_str(self) -> str:
        if self.total is None:
            return ""
        return f"${format_decimal(self.total)}"

    def created_at_str(self) -> str:
        return self.created_at.astimezone().strftime("%Y/%m/%d %H:%M:%S")

    def items_str(self) -> str:
        if not self.items:
            return ""

        parts: list[str] = []
        for it in self.items:
            qty = format_decimal(it.quantity)
            unit = format_decimal(it.unit_price)
            sub = format_decimal(it.subtotal)
            parts.append(f"{it.name} : {qty} * {unit} = {sub}")
        return "； ".join(parts)


@dataclass(frozen=True)
class InvoiceSummary:
    id: str
    created_at: datetime
    total: Optional[Decimal]
    items_count: int

    def amount_str(self) -> str:
        if self.total is None:
            return "-"
        return f"${format_decimal(self.total)}"
