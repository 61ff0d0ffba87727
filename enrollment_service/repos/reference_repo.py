from __future__ import annotations

from typing import Protocol

from enrollment_service.models.course import Course
from enrollment_service.models.discount import Discount
from enrollment_service.models.participant import BillingRecord, Person, Receipt


class ReferenceRepo(Protocol):
    """Read-only lookups for entities an enrollment points at."""

    async def get_course(self, course_id: int) -> Course | None: ...
    async def get_person(self, person_id: int) -> Person | None: ...
    async def get_billing(self, billing_id: int) -> BillingRecord | None: ...
    async def get_receipt(self, receipt_id: int) -> Receipt | None: ...
    async def get_discount(self, discount_id: int) -> Discount | None: ...


class InMemoryReferenceRepo:
    def __init__(self) -> None:
        self.courses: dict[int, Course] = {}
        self.persons: dict[int, Person] = {}
        self.billings: dict[int, BillingRecord] = {}
        self.receipts: dict[int, Receipt] = {}
        self.discounts: dict[int, Discount] = {}

    # Seeding helpers: the real records are written by other services.

    def add_course(self, course: Course) -> None:
        self.courses[course.id] = course

    def add_person(self, person: Person) -> None:
        self.persons[person.id] = person

    def add_billing(self, billing: BillingRecord) -> None:
        self.billings[billing.id] = billing

    def add_receipt(self, receipt: Receipt) -> None:
        self.receipts[receipt.id] = receipt

    def add_discount(self, discount: Discount) -> None:
        self.discounts[discount.id] = discount

    async def get_course(self, course_id: int) -> Course | None:
        return self.courses.get(course_id)

    async def get_person(self, person_id: int) -> Person | None:
        return self.persons.get(person_id)

    async def get_billing(self, billing_id: int) -> BillingRecord | None:
        return self.billings.get(billing_id)

    async def get_receipt(self, receipt_id: int) -> Receipt | None:
        return self.receipts.get(receipt_id)

    async def get_discount(self, discount_id: int) -> Discount | None:
        return self.discounts.get(discount_id)
