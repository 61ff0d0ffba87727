"""PostgreSQL implementation of EnrollmentRepo."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_service.core.errors import (
    DuplicateEnrollmentError,
    StaleEnrollmentError,
)
from enrollment_service.db.tables import EnrollmentRow
from enrollment_service.models.enrollment import Enrollment
from enrollment_service.repos.enrollment_repo import ORDERABLE_FIELDS, UPDATABLE_FIELDS

_COLUMNS = (
    EnrollmentRow.id,
    EnrollmentRow.course_id,
    EnrollmentRow.person_id,
    EnrollmentRow.billing_id,
    EnrollmentRow.receipt_id,
    EnrollmentRow.discount_id,
    EnrollmentRow.matriculated,
    EnrollmentRow.enrolled_at,
    EnrollmentRow.version,
)


class PgEnrollmentRepo:
    """Satisfies the EnrollmentRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _one(self, *criteria) -> Enrollment | None:
        stmt = select(*_COLUMNS).where(*criteria)
        row = (await self._session.execute(stmt)).first()
        if row is None:
            return None
        return _row_to_enrollment(row)

    async def get_by_id(self, enrollment_id: int) -> Enrollment | None:
        return await self._one(EnrollmentRow.id == enrollment_id)

    async def get_by_receipt(self, receipt_id: int) -> Enrollment | None:
        return await self._one(EnrollmentRow.receipt_id == receipt_id)

    async def get_by_course_and_person(
        self, course_id: int, person_id: int
    ) -> Enrollment | None:
        return await self._one(
            EnrollmentRow.course_id == course_id,
            EnrollmentRow.person_id == person_id,
        )

    async def add(
        self, *, course_id: int, person_id: int, billing_id: int, receipt_id: int
    ) -> Enrollment:
        template = Enrollment.new(
            id=0,
            course_id=course_id,
            person_id=person_id,
            billing_id=billing_id,
            receipt_id=receipt_id,
        )
        stmt = (
            insert(EnrollmentRow)
            .values(
                course_id=course_id,
                person_id=person_id,
                billing_id=billing_id,
                receipt_id=receipt_id,
                matriculated=False,
                enrolled_at=template.enrolled_at,
                version=1,
            )
            .returning(*_COLUMNS)
        )
        # Savepoint so a constraint violation leaves the request transaction usable.
        try:
            async with self._session.begin_nested():
                row = (await self._session.execute(stmt)).one()
        except IntegrityError as exc:
            field = (
                "receipt_id" if "receipt_id" in str(exc.orig) else "course_id, person_id"
            )
            raise DuplicateEnrollmentError(field) from exc
        return _row_to_enrollment(row)

    async def update(
        self, enrollment_id: int, *, expected_version: int, changes: dict[str, Any]
    ) -> Enrollment:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")

        stmt = (
            update(EnrollmentRow)
            .where(
                EnrollmentRow.id == enrollment_id,
                EnrollmentRow.version == expected_version,
            )
            .values(**changes, version=EnrollmentRow.version + 1)
            .returning(*_COLUMNS)
        )
        row = (await self._session.execute(stmt)).first()
        if row is None:
            raise StaleEnrollmentError(enrollment_id)
        return _row_to_enrollment(row)

    async def delete(self, enrollment_id: int) -> bool:
        stmt = delete(EnrollmentRow).where(EnrollmentRow.id == enrollment_id)
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_page(
        self, *, offset: int, limit: int, order_by: str, descending: bool
    ) -> tuple[list[Enrollment], int]:
        if order_by not in ORDERABLE_FIELDS:
            raise ValueError(f"cannot order by {order_by!r}")
        column = getattr(EnrollmentRow, order_by)
        stmt = (
            select(*_COLUMNS)
            .order_by(column.desc() if descending else column.asc(), EnrollmentRow.id)
            .offset(offset)
            .limit(limit)
        )
        rows = (await self._session.execute(stmt)).all()
        total = (
            await self._session.execute(select(func.count()).select_from(EnrollmentRow))
        ).scalar_one()
        return [_row_to_enrollment(r) for r in rows], total

    @asynccontextmanager
    async def locked(self, enrollment_id: int) -> AsyncIterator[None]:
        # Row lock lives until the request transaction commits or rolls back.
        stmt = (
            select(EnrollmentRow.id)
            .where(EnrollmentRow.id == enrollment_id)
            .with_for_update()
        )
        await self._session.execute(stmt)
        yield


def _row_to_enrollment(row) -> Enrollment:
    return Enrollment(
        id=row.id,
        course_id=row.course_id,
        person_id=row.person_id,
        billing_id=row.billing_id,
        receipt_id=row.receipt_id,
        discount_id=row.discount_id,
        matriculated=row.matriculated,
        enrolled_at=row.enrolled_at,
        version=row.version,
    )
