"""PostgreSQL implementation of LmsLinkRepo.

Link reads and writes are tolerated failures for the LMS trigger and the
unenroll hook, so each statement runs in a savepoint: a failed one must
not poison the request transaction.
"""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_service.db.tables import LmsEnrollmentRow
from enrollment_service.models.invoice import LmsEnrollmentLink


class PgLmsLinkRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, enrollment_id: int) -> LmsEnrollmentLink | None:
        stmt = select(LmsEnrollmentRow).where(
            LmsEnrollmentRow.enrollment_id == enrollment_id
        )
        async with self._session.begin_nested():
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return LmsEnrollmentLink(
            enrollment_id=row.enrollment_id,
            lms_user_id=row.lms_user_id,
            lms_course_id=row.lms_course_id,
            lms_username=row.lms_username,
            status=row.status,
        )

    async def save(self, link: LmsEnrollmentLink) -> None:
        values = {
            "lms_user_id": link.lms_user_id,
            "lms_course_id": link.lms_course_id,
            "lms_username": link.lms_username,
            "status": link.status,
        }
        stmt = (
            insert(LmsEnrollmentRow)
            .values(enrollment_id=link.enrollment_id, **values)
            .on_conflict_do_update(index_elements=["enrollment_id"], set_=values)
        )
        async with self._session.begin_nested():
            await self._session.execute(stmt)

    async def set_status(self, enrollment_id: int, status: str) -> None:
        stmt = (
            update(LmsEnrollmentRow)
            .where(LmsEnrollmentRow.enrollment_id == enrollment_id)
            .values(status=status)
        )
        async with self._session.begin_nested():
            await self._session.execute(stmt)
