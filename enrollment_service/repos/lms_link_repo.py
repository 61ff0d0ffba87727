from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from enrollment_service.models.invoice import LmsEnrollmentLink


class LmsLinkRepo(Protocol):
    async def get(self, enrollment_id: int) -> LmsEnrollmentLink | None: ...
    async def save(self, link: LmsEnrollmentLink) -> None: ...
    async def set_status(self, enrollment_id: int, status: str) -> None: ...


class InMemoryLmsLinkRepo:
    def __init__(self) -> None:
        self._store: dict[int, LmsEnrollmentLink] = {}

    async def get(self, enrollment_id: int) -> LmsEnrollmentLink | None:
        return self._store.get(enrollment_id)

    async def save(self, link: LmsEnrollmentLink) -> None:
        self._store[link.enrollment_id] = link

    async def set_status(self, enrollment_id: int, status: str) -> None:
        link = self._store.get(enrollment_id)
        if link is not None:
            self._store[enrollment_id] = replace(link, status=status)
