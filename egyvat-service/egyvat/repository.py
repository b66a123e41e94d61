"""
Invoice storage keyed by invoice number.

Writes are compare-and-swap on ``updated_at`` so that two concurrent
actions on the same invoice cannot silently overwrite each other.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .exceptions import InvoiceConflictError, InvoiceNotFoundError
from .schema import Invoice


_UNSET = object()


class InvoiceRepository(Protocol):
    def get(self, invoice_number: str) -> Invoice: ...

    def put(self, invoice: Invoice, expected_updated_at=_UNSET) -> None: ...

    def list(self, limit: int = 100) -> List[Invoice]: ...


class InMemoryInvoiceRepository:
    """
    Process-local repository. Stores deep copies so callers cannot mutate
    stored state behind its back.
    """

    def __init__(self) -> None:
        self._items: Dict[str, Invoice] = {}
        self._lock = threading.Lock()

    def get(self, invoice_number: str) -> Invoice:
        with self._lock:
            stored = self._items.get(invoice_number)
            if stored is None:
                raise InvoiceNotFoundError(
                    f"Invoice {invoice_number} not found",
                    {"invoice_number": invoice_number},
                )
            return stored.model_copy(deep=True)

    def put(self, invoice: Invoice, expected_updated_at=_UNSET) -> None:
        """
        Store ``invoice``.

        Without ``expected_updated_at`` the invoice number must be new.
        With it, the stored invoice must still carry that ``updated_at``
        value (``None`` for an invoice never updated).
        """
        with self._lock:
            stored: Optional[Invoice] = self._items.get(invoice.invoice_number)

            if expected_updated_at is _UNSET:
                if stored is not None:
                    raise InvoiceConflictError(
                        f"Invoice {invoice.invoice_number} already exists",
                        {"invoice_number": invoice.invoice_number},
                    )
            else:
                current: Optional[datetime] = stored.updated_at if stored else None
                if stored is None or current != expected_updated_at:
                    raise InvoiceConflictError(
                        f"Invoice {invoice.invoice_number} was modified concurrently",
                        {"invoice_number": invoice.invoice_number},
                    )

            self._items[invoice.invoice_number] = invoice.model_copy(deep=True)

    def list(self, limit: int = 100) -> List[Invoice]:
        with self._lock:
            invoices = sorted(self._items.values(), key=lambda inv: inv.created_at, reverse=True)
            return [inv.model_copy(deep=True) for inv in invoices[:limit]]
