from __future__ import annotations

from typing import Protocol

from enrollment_service.models.invoice import Invoice


class InvoiceRepo(Protocol):
    async def list_for_enrollment(
        self, enrollment_id: int, *, for_share: bool = False
    ) -> list[Invoice]: ...


class InMemoryInvoiceRepo:
    def __init__(self) -> None:
        self._by_id: dict[int, Invoice] = {}

    def add(self, invoice: Invoice) -> None:
        self._by_id[invoice.id] = invoice

    async def list_for_enrollment(
        self, enrollment_id: int, *, for_share: bool = False
    ) -> list[Invoice]:
        return [i for i in self._by_id.values() if i.enrollment_id == enrollment_id]
