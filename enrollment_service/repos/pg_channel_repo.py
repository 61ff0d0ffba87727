"""PostgreSQL implementation of MessagingChannelDirectory.

The invitation trigger is best-effort, so its lookups run in their own
short-lived sessions, never on the request transaction: a failed or
timed-out query must not abort the matriculation write it follows.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_service.db.tables import MessagingChannelRow


class PgChannelDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists_for_course(self, course_id: int) -> bool:
        stmt = select(MessagingChannelRow.course_id).where(
            MessagingChannelRow.course_id == course_id,
            MessagingChannelRow.active.is_(True),
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).first() is not None

    async def get_invitation_link(self, course_id: int) -> str | None:
        stmt = select(MessagingChannelRow.invitation_link).where(
            MessagingChannelRow.course_id == course_id,
            MessagingChannelRow.active.is_(True),
        )
        async with self._session_factory() as session:
            link = (await session.execute(stmt)).scalar_one_or_none()
        return link or None
