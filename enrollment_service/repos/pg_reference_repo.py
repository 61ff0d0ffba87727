"""PostgreSQL implementation of ReferenceRepo.

Each lookup opens its own short-lived session: an AsyncSession does not
allow concurrent statements, and the precondition validator fetches all
four references at once.
"""

from __future__ import annotations

from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_service.db.engine import Base
from enrollment_service.db.tables import (
    BillingRecordRow,
    CourseRow,
    DiscountRow,
    PersonRow,
    ReceiptRow,
)
from enrollment_service.models.course import Course
from enrollment_service.models.discount import Discount
from enrollment_service.models.participant import BillingRecord, Person, Receipt

_RowT = TypeVar("_RowT", bound=Base)


class PgReferenceRepo:
    """Satisfies the ReferenceRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _get(self, row_type: type[_RowT], row_id: int) -> _RowT | None:
        async with self._session_factory() as session:
            return await session.get(row_type, row_id)

    async def get_course(self, course_id: int) -> Course | None:
        row = await self._get(CourseRow, course_id)
        if row is None:
            return None
        return Course(
            id=row.id,
            name=row.name,
            short_name=row.short_name,
            start_date=row.start_date,
            end_date=row.end_date,
        )

    async def get_person(self, person_id: int) -> Person | None:
        row = await self._get(PersonRow, person_id)
        if row is None:
            return None
        return Person(
            id=row.id,
            national_id=row.national_id,
            first_names=row.first_names,
            last_names=row.last_names,
            email=row.email,
        )

    async def get_billing(self, billing_id: int) -> BillingRecord | None:
        row = await self._get(BillingRecordRow, billing_id)
        if row is None:
            return None
        return BillingRecord(
            id=row.id, business_name=row.business_name, tax_id=row.tax_id
        )

    async def get_receipt(self, receipt_id: int) -> Receipt | None:
        row = await self._get(ReceiptRow, receipt_id)
        if row is None:
            return None
        return Receipt(id=row.id, file_name=row.file_name, uploaded_at=row.uploaded_at)

    async def get_discount(self, discount_id: int) -> Discount | None:
        row = await self._get(DiscountRow, discount_id)
        if row is None:
            return None
        return Discount(id=row.id, name=row.name, percentage=row.percentage)
