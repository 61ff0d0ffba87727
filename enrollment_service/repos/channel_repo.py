from __future__ import annotations

from typing import Protocol

from enrollment_service.models.course import MessagingChannel


class MessagingChannelDirectory(Protocol):
    async def exists_for_course(self, course_id: int) -> bool: ...
    async def get_invitation_link(self, course_id: int) -> str | None: ...


class InMemoryChannelDirectory:
    def __init__(self) -> None:
        self._by_course: dict[int, MessagingChannel] = {}

    def add(self, channel: MessagingChannel) -> None:
        self._by_course[channel.course_id] = channel

    async def exists_for_course(self, course_id: int) -> bool:
        channel = self._by_course.get(course_id)
        return channel is not None and channel.active

    async def get_invitation_link(self, course_id: int) -> str | None:
        channel = self._by_course.get(course_id)
        if channel is None or not channel.active:
            return None
        return channel.invitation_link or None
