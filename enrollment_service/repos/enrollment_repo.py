from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import replace
from typing import Any, Protocol

from enrollment_service.core.errors import (
    DuplicateEnrollmentError,
    StaleEnrollmentError,
)
from enrollment_service.models.enrollment import Enrollment

ORDERABLE_FIELDS = ("id", "enrolled_at", "course_id", "person_id", "matriculated")
UPDATABLE_FIELDS = frozenset({"discount_id", "matriculated"})


class EnrollmentRepo(Protocol):
    async def get_by_id(self, enrollment_id: int) -> Enrollment | None: ...
    async def get_by_receipt(self, receipt_id: int) -> Enrollment | None: ...
    async def get_by_course_and_person(
        self, course_id: int, person_id: int
    ) -> Enrollment | None: ...
    async def add(
        self, *, course_id: int, person_id: int, billing_id: int, receipt_id: int
    ) -> Enrollment: ...
    async def update(
        self, enrollment_id: int, *, expected_version: int, changes: dict[str, Any]
    ) -> Enrollment: ...
    async def delete(self, enrollment_id: int) -> bool: ...
    async def list_page(
        self, *, offset: int, limit: int, order_by: str, descending: bool
    ) -> tuple[list[Enrollment], int]: ...
    def locked(self, enrollment_id: int) -> AbstractAsyncContextManager[None]: ...


class InMemoryEnrollmentRepo:
    def __init__(self) -> None:
        self._by_id: dict[int, Enrollment] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._next_id = 1

    async def get_by_id(self, enrollment_id: int) -> Enrollment | None:
        return self._by_id.get(enrollment_id)

    async def get_by_receipt(self, receipt_id: int) -> Enrollment | None:
        return next(
            (e for e in self._by_id.values() if e.receipt_id == receipt_id), None
        )

    async def get_by_course_and_person(
        self, course_id: int, person_id: int
    ) -> Enrollment | None:
        return next(
            (
                e
                for e in self._by_id.values()
                if e.course_id == course_id and e.person_id == person_id
            ),
            None,
        )

    async def add(
        self, *, course_id: int, person_id: int, billing_id: int, receipt_id: int
    ) -> Enrollment:
        # Same uniqueness rules the database enforces with constraints.
        if await self.get_by_receipt(receipt_id) is not None:
            raise DuplicateEnrollmentError("receipt_id")
        if await self.get_by_course_and_person(course_id, person_id) is not None:
            raise DuplicateEnrollmentError("course_id, person_id")

        enrollment = Enrollment.new(
            id=self._next_id,
            course_id=course_id,
            person_id=person_id,
            billing_id=billing_id,
            receipt_id=receipt_id,
        )
        self._next_id += 1
        self._by_id[enrollment.id] = enrollment
        return enrollment

    async def update(
        self, enrollment_id: int, *, expected_version: int, changes: dict[str, Any]
    ) -> Enrollment:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")

        current = self._by_id.get(enrollment_id)
        if current is None or current.version != expected_version:
            raise StaleEnrollmentError(enrollment_id)

        updated = replace(current, **changes, version=current.version + 1)
        self._by_id[enrollment_id] = updated
        return updated

    async def delete(self, enrollment_id: int) -> bool:
        self._locks.pop(enrollment_id, None)
        return self._by_id.pop(enrollment_id, None) is not None

    async def list_page(
        self, *, offset: int, limit: int, order_by: str, descending: bool
    ) -> tuple[list[Enrollment], int]:
        if order_by not in ORDERABLE_FIELDS:
            raise ValueError(f"cannot order by {order_by!r}")
        ordered = sorted(
            self._by_id.values(),
            key=lambda e: (getattr(e, order_by), e.id),
            reverse=descending,
        )
        return ordered[offset : offset + limit], len(ordered)

    @asynccontextmanager
    async def locked(self, enrollment_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(enrollment_id, asyncio.Lock())
        async with lock:
            yield
