"""SQLite-backed storage for parsed invoices.

Invoices are keyed by their payload-derived id. Saving the same id again
replaces the header and the whole item list in one transaction, so a reader
never sees a header without its items or items left over from an older save.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from einvoice.db import InvoiceItemRow, InvoiceRow, create_db_engine, make_session_factory, migrate
from einvoice.models import Invoice, InvoiceItem, InvoiceSummary


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _to_epoch_ms(value: datetime) -> int:
    # exact to the millisecond
    return (value - _EPOCH) // _ONE_MS


def _from_epoch_ms(value: int) -> datetime:
    return _EPOCH + value * _ONE_MS


def _decimal_or_none(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)


def _item_id(invoice_id: str, idx: int) -> str:
    return f"{invoice_id}_it_{idx}"


class InvoiceRepository:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def init(self) -> None:
        if self._engine is not None:
            return
        engine = create_db_engine(self.database_url)
        migrate(engine)
        self._engine = engine
        self._session_factory = make_session_factory(engine)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

    def _sessions(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("InvoiceRepository used before init()")
        return self._session_factory

    def save(self, invoice: Invoice) -> None:
        with self._sessions().begin() as db:
            row = db.get(InvoiceRow, invoice.id)
            if row is None:
                row = InvoiceRow(id=invoice.id, raw_left=invoice.raw_left, created_at=_to_epoch_ms(invoice.created_at))
                db.add(row)
                db.flush()

            row.inv_num = invoice.invoice_number
            row.inv_date = invoice.invoice_date
            row.random_code = invoice.random_number
            row.seller_id = invoice.seller_identifier
            row.total = str(invoice.total) if invoice.total is not None else None
            row.raw_left = invoice.raw_left
            row.raw_right = invoice.raw_right
            row.created_at = _to_epoch_ms(invoice.created_at)

            db.query(InvoiceItemRow).filter_by(invoice_id=invoice.id).delete()

            for idx, it in enumerate(invoice.items):
                db.add(InvoiceItemRow(
                    id=_item_id(invoice.id, idx),
                    invoice_id=invoice.id,
                    position=idx,
                    name=it.name,
                    qty=str(it.quantity),
                    unit_price=str(it.unit_price),
                ))

    def get_by_id(self, invoice_id: str) -> Optional[Invoice]:
        with self._sessions()() as db:
            row = db.get(InvoiceRow, invoice_id)
            if row is None:
                return None

            item_rows = (
                db.query(InvoiceItemRow)
                .filter_by(invoice_id=invoice_id)
                .order_by(InvoiceItemRow.position.asc())
                .all()
            )
            items = tuple(
                InvoiceItem(name=it.name, quantity=Decimal(it.qty), unit_price=Decimal(it.unit_price))
                for it in item_rows
            )

            return Invoice(
                id=row.id,
                items=items,
                total=_decimal_or_none(row.total),
                raw_left=row.raw_left,
                raw_right=row.raw_right,
                created_at=_from_epoch_ms(row.created_at),
                invoice_number=row.inv_num,
                invoice_date=row.inv_date,
                random_number=row.random_code,
                seller_identifier=row.seller_id,
            )

    def list_summaries(self, limit: int = 50) -> list[InvoiceSummary]:
        """Most recent first."""
        with self._sessions()() as db:
            items_count = (
                db.query(func.count(InvoiceItemRow.id))
                .filter(InvoiceItemRow.invoice_id == InvoiceRow.id)
                .correlate(InvoiceRow)
                .scalar_subquery()
            )
            rows = (
                db.query(InvoiceRow.id, InvoiceRow.created_at, InvoiceRow.total, items_count)
                .order_by(InvoiceRow.created_at.desc(), InvoiceRow.id.asc())
                .limit(limit)
                .all()
            )

        return [
            InvoiceSummary(
                id=inv_id,
                created_at=_from_epoch_ms(created_at),
                total=_decimal_or_none(total),
                items_count=int(count or 0),
            )
            for inv_id, created_at, total, count in rows
        ]

    def clear_all(self) -> None:
        with self._sessions().begin() as db:
            db.query(InvoiceItemRow).delete()
            db.query(InvoiceRow).delete()
