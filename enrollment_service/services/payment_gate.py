from __future__ import annotations

from collections.abc import Iterable

from enrollment_service.models.invoice import Invoice
from enrollment_service.repos.invoice_repo import InvoiceRepo


def has_verified_payment(invoices: Iterable[Invoice]) -> bool:
    """One verified invoice is enough; rejected ones alongside it don't matter."""
    return any(i.payment_verified for i in invoices)


class PaymentGate:
    """Answers whether an enrollment has been paid, from its invoices."""

    def __init__(self, invoices: InvoiceRepo) -> None:
        self._invoices = invoices

    async def list_invoices_for_enrollment(
        self, enrollment_id: int, *, for_share: bool = False
    ) -> list[Invoice]:
        return await self._invoices.list_for_enrollment(
            enrollment_id, for_share=for_share
        )

    async def is_payment_verified(
        self, enrollment_id: int, *, for_share: bool = False
    ) -> bool:
        invoices = await self.list_invoices_for_enrollment(
            enrollment_id, for_share=for_share
        )
        return has_verified_payment(invoices)
