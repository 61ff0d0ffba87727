from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from enrollment_service.models.course import Course
from enrollment_service.models.discount import Discount
from enrollment_service.models.participant import BillingRecord, Person, Receipt


@dataclass(frozen=True, slots=True)
class Enrollment:
    """An "inscripción": one person in one course, backed by one receipt.

    `matriculated` only moves false -> true through the orchestrator,
    which also bumps `version` on every write.
    """

    id: int
    course_id: int
    person_id: int
    billing_id: int
    receipt_id: int
    enrolled_at: datetime
    discount_id: int | None = None
    matriculated: bool = False
    version: int = 1

    @staticmethod
    def new(
        *,
        id: int,
        course_id: int,
        person_id: int,
        billing_id: int,
        receipt_id: int,
    ) -> Enrollment:
        return Enrollment(
            id=id,
            course_id=course_id,
            person_id=person_id,
            billing_id=billing_id,
            receipt_id=receipt_id,
            enrolled_at=datetime.now(UTC),
        )


@dataclass(frozen=True, slots=True)
class EnrollmentPatch:
    discount_id: int | None = None
    matriculated: bool | None = None


@dataclass(frozen=True, slots=True)
class EnrollmentDetail:
    """Enrollment with its references resolved, for display and triggers."""

    enrollment: Enrollment
    course: Course
    person: Person
    billing: BillingRecord
    receipt: Receipt
    discount: Discount | None = None

    @property
    def id(self) -> int:
        return self.enrollment.id

    @property
    def matriculated(self) -> bool:
        return self.enrollment.matriculated


@dataclass(frozen=True, slots=True)
class EnrollmentPage:
    items: list[EnrollmentDetail]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0
