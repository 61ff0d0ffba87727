"""PostgreSQL implementation of InvoiceRepo."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_service.db.tables import InvoiceRow
from enrollment_service.models.invoice import Invoice


class PgInvoiceRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_enrollment(
        self, enrollment_id: int, *, for_share: bool = False
    ) -> list[Invoice]:
        stmt = (
            select(InvoiceRow)
            .where(InvoiceRow.enrollment_id == enrollment_id)
            .order_by(InvoiceRow.id)
        )
        if for_share:
            # FOR SHARE: a concurrent verification revocation waits for our commit.
            stmt = stmt.with_for_update(read=True)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [
            Invoice(
                id=row.id,
                enrollment_id=row.enrollment_id,
                billing_id=row.billing_id,
                amount_paid=row.amount_paid,
                payment_verified=row.payment_verified,
                invoice_number=row.invoice_number,
            )
            for row in rows
        ]
