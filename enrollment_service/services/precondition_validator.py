"""Checks run before an enrollment is written.

The four referenced records are fetched concurrently; errors are then
reported in a fixed order (course, person, billing, receipt) so the
caller always sees the same NotFound for the same request.
"""

from __future__ import annotations

import asyncio
import logging

from enrollment_service.core.errors import Conflict, NotFound
from enrollment_service.repos.enrollment_repo import EnrollmentRepo
from enrollment_service.repos.reference_repo import ReferenceRepo

logger = logging.getLogger(__name__)


class PreconditionValidator:
    def __init__(
        self,
        references: ReferenceRepo,
        enrollments: EnrollmentRepo,
        *,
        timeout: float = 5.0,
    ) -> None:
        self._references = references
        self._enrollments = enrollments
        self._timeout = timeout

    async def validate(
        self, *, course_id: int, person_id: int, billing_id: int, receipt_id: int
    ) -> None:
        async with asyncio.timeout(self._timeout):
            course, person, billing, receipt = await asyncio.gather(
                self._references.get_course(course_id),
                self._references.get_person(person_id),
                self._references.get_billing(billing_id),
                self._references.get_receipt(receipt_id),
            )

        for entity, entity_id, found in (
            ("course", course_id, course),
            ("person", person_id, person),
            ("billing", billing_id, billing),
            ("receipt", receipt_id, receipt),
        ):
            if found is None:
                logger.warning("Rejected enrollment: %s %d missing", entity, entity_id)
                raise NotFound(entity, entity_id)

        holder = await self._enrollments.get_by_receipt(receipt_id)
        if holder is not None:
            logger.warning(
                "Rejected enrollment: receipt=%d already used by enrollment=%d",
                receipt_id,
                holder.id,
            )
            raise Conflict(f"receipt already assigned to enrollment {holder.id}")

        existing = await self._enrollments.get_by_course_and_person(
            course_id, person_id
        )
        if existing is not None:
            logger.warning(
                "Rejected enrollment: person=%d already in course=%d",
                person_id,
                course_id,
            )
            raise Conflict("person already enrolled in course")
