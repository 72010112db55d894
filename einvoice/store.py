"""Invoice store: the one object the CLI holds for reading and writing invoices.

Constructed once at startup around a repository and passed to whoever needs it.
It keeps the latest summary list so list views don't hit the database on every
render.
"""

from __future__ import annotations

from typing import Optional

from einvoice.invoice_repo import InvoiceRepository
from einvoice.models import Invoice, InvoiceSummary


class InvoiceStore:
    def __init__(self, repository: InvoiceRepository, *, summary_limit: int = 200) -> None:
        self.repository = repository
        self.summary_limit = summary_limit
        self._summaries: list[InvoiceSummary] = []
        self._ready = False

    def __enter__(self) -> "InvoiceStore":
        self.init()
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def init(self) -> None:
        self.repository.init()
        self._ready = True
        self.refresh()

    def dispose(self) -> None:
        self.repository.dispose()
        self._summaries = []
        self._ready = False

    def _require_ready(self) -> None:
        if not self._ready:
            raise RuntimeError("InvoiceStore used before init()")

    @property
    def summaries(self) -> list[InvoiceSummary]:
        self._require_ready()
        return list(self._summaries)

    def refresh(self) -> None:
        self._require_ready()
        self._summaries = self.repository.list_summaries(self.summary_limit)

    def save(self, invoice: Invoice) -> None:
        self._require_ready()
        self.repository.save(invoice)
        self.refresh()

    def get_by_id(self, invoice_id: str) -> Optional[Invoice]:
        self._require_ready()
        return self.repository.get_by_id(invoice_id)

    def clear_all(self) -> None:
        self._require_ready()
        self.repository.clear_all()
        self.refresh()
