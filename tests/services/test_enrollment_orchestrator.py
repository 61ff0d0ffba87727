"""Enrollment lifecycle: creation rules, payment-gated matriculation,
trigger ordering and compensation, deletion policy."""

from __future__ import annotations

import asyncio
import logging

import pytest
from prometheus_client import REGISTRY

from enrollment_service.core.errors import (
    Conflict,
    ExternalServiceError,
    InvalidRequest,
    LmsError,
    NotFound,
    StaleEnrollmentError,
    UnknownError,
)
from enrollment_service.models.course import MessagingChannel
from enrollment_service.models.enrollment import EnrollmentPatch
from enrollment_service.models.invoice import Invoice
from enrollment_service.models.participant import Person
from enrollment_service.repos.enrollment_repo import InMemoryEnrollmentRepo
from enrollment_service.repos.invoice_repo import InMemoryInvoiceRepo
from enrollment_service.repos.lms_link_repo import InMemoryLmsLinkRepo
from enrollment_service.services.lms_client import InMemoryLmsClient
from enrollment_service.services.notification_sender import InMemoryNotificationSender
from enrollment_service.services.task_queue import (
    RECONCILIATION_QUEUE,
    UNENROLL_RETRY_QUEUE,
)
from tests.conftest import COURSE, PERSON, Harness, make_harness, verified_invoice

MATRICULATE = EnrollmentPatch(matriculated=True)


def _create(h: Harness, *, receipt_id: int = 1, person_id: int = 1):
    return asyncio.run(
        h.orchestrator.create(
            course_id=1, person_id=person_id, billing_id=1, receipt_id=receipt_id
        )
    )


def _paid_enrollment(h: Harness) -> int:
    detail = _create(h)
    h.invoices.add(verified_invoice(detail.id))
    return detail.id


def _with_channel(h: Harness, link: str | None = "https://t.me/+py101") -> None:
    h.channels.add(
        MessagingChannel(course_id=COURSE.id, name="PY-101", invitation_link=link)
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


def test_create_returns_unmatriculated_enrollment(harness: Harness) -> None:
    detail = _create(harness)

    assert detail.id == 1
    assert detail.matriculated is False
    assert detail.enrollment.version == 1
    assert detail.course == COURSE
    assert detail.person == PERSON
    assert detail.receipt.id == 1


def test_create_same_course_and_person_conflicts(harness: Harness) -> None:
    _create(harness, receipt_id=1)

    with pytest.raises(Conflict, match="already enrolled in course"):
        _create(harness, receipt_id=2)

    _, total = asyncio.run(
        harness.enrollments.list_page(
            offset=0, limit=10, order_by="id", descending=False
        )
    )
    assert total == 1


def test_create_with_receipt_in_use_conflicts(harness: Harness) -> None:
    harness.references.add_person(
        Person(
            id=2,
            national_id="0912345678",
            first_names="Luis",
            last_names="Mena",
            email="luis.mena@example.com",
        )
    )
    _create(harness, receipt_id=1)

    with pytest.raises(Conflict, match="receipt already assigned to enrollment 1"):
        _create(harness, receipt_id=1, person_id=2)


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"course_id": 99}, "course 99 not found"),
        ({"person_id": 99}, "person 99 not found"),
        ({"billing_id": 99}, "billing 99 not found"),
        ({"receipt_id": 99}, "receipt 99 not found"),
        # Several missing: the first in course, person, billing, receipt order wins.
        ({"person_id": 98, "receipt_id": 99}, "person 98 not found"),
    ],
)
def test_create_with_missing_reference_not_found(
    harness: Harness, kwargs: dict, message: str
) -> None:
    args = {"course_id": 1, "person_id": 1, "billing_id": 1, "receipt_id": 1} | kwargs

    with pytest.raises(NotFound, match=message):
        asyncio.run(harness.orchestrator.create(**args))

    assert harness.enrollments._by_id == {}


class _RacingEnrollmentRepo(InMemoryEnrollmentRepo):
    """Validation never sees the competing row, as in a concurrent create."""

    async def get_by_receipt(self, receipt_id):
        return None

    async def get_by_course_and_person(self, course_id, person_id):
        return None


def test_duplicate_rejected_by_store_maps_to_conflict() -> None:
    h = make_harness(enrollments=_RacingEnrollmentRepo())
    _create(h, receipt_id=1)

    with pytest.raises(Conflict, match="person already enrolled in course"):
        _create(h, receipt_id=2)
    with pytest.raises(Conflict, match="receipt already assigned"):
        _create(h, receipt_id=1)


# ---------------------------------------------------------------------------
# Matriculation gate
# ---------------------------------------------------------------------------


def test_matriculation_without_invoice_conflicts(harness: Harness) -> None:
    enrollment_id = _create(harness).id

    with pytest.raises(Conflict, match="no invoice exists for enrollment 1"):
        asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    current = asyncio.run(harness.orchestrator.get(enrollment_id))
    assert current.matriculated is False
    assert current.enrollment.version == 1
    assert harness.lms.calls == []


def test_matriculation_with_only_unverified_invoices_conflicts(
    harness: Harness,
) -> None:
    enrollment_id = _create(harness).id
    for invoice_id in (1, 2):
        harness.invoices.add(
            Invoice(
                id=invoice_id,
                enrollment_id=enrollment_id,
                billing_id=1,
                amount_paid=verified_invoice(enrollment_id).amount_paid,
                payment_verified=False,
            )
        )

    with pytest.raises(Conflict, match="payment not verified for enrollment 1"):
        asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert asyncio.run(harness.orchestrator.get(enrollment_id)).matriculated is False


def test_one_verified_invoice_among_rejected_ones_is_enough(harness: Harness) -> None:
    enrollment_id = _create(harness).id
    harness.invoices.add(
        Invoice(
            id=1,
            enrollment_id=enrollment_id,
            billing_id=1,
            amount_paid=verified_invoice(enrollment_id).amount_paid,
        )
    )
    harness.invoices.add(verified_invoice(enrollment_id, invoice_id=2))

    detail = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True


class _FailingInvoices(InMemoryInvoiceRepo):
    async def list_for_enrollment(self, enrollment_id, *, for_share=False):
        raise RuntimeError("connection reset")


def test_invoice_store_fault_is_wrapped_as_unknown_error() -> None:
    h = make_harness(invoices=_FailingInvoices())
    enrollment_id = _create(h).id

    failed = f"check payment failed for enrollment {enrollment_id}"
    with pytest.raises(UnknownError, match=failed) as excinfo:
        asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))

    assert excinfo.value.operation == "check payment"
    assert excinfo.value.enrollment_id == enrollment_id
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert h.lms.calls == []
    assert asyncio.run(h.orchestrator.get(enrollment_id)).matriculated is False


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class _OrderedLms(InMemoryLmsClient):
    def __init__(self, events: list[str]) -> None:
        super().__init__()
        self.events = events

    async def enroll(self, person, course):
        self.events.append("lms")
        return await super().enroll(person, course)


class _OrderedSender(InMemoryNotificationSender):
    def __init__(self, events: list[str]) -> None:
        super().__init__()
        self.events = events

    async def send_invitation(self, address, payload):
        self.events.append("invite")
        return await super().send_invitation(address, payload)


def test_paid_matriculation_enrolls_then_invites() -> None:
    events: list[str] = []
    h = make_harness(lms=_OrderedLms(events), sender=_OrderedSender(events))
    enrollment_id = _paid_enrollment(h)
    _with_channel(h)

    detail = asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True
    assert detail.enrollment.version == 2
    assert events == ["lms", "invite"]
    assert (PERSON.email, COURSE.id) in h.lms.enrolled

    address, payload = h.sender.sent[0]
    assert address == PERSON.email
    assert payload.first_names == "Ana María"
    assert payload.last_names == "Torres Vega"
    assert payload.course_name == "Python Fundamentals"
    assert payload.invitation_link == "https://t.me/+py101"
    assert payload.start_date == "02/03/2026"


def test_successful_lms_enrollment_records_link(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)

    asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    link = asyncio.run(harness.lms_links.get(enrollment_id))
    assert link is not None
    assert link.status == "enrolled"
    assert link.lms_username == PERSON.email


def test_lms_failure_reverts_matriculation(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    _with_channel(harness)
    harness.lms.fail_enroll = LmsError("enrol_manual_enrol_users: coursenotexist")

    failed = "lms enrollment failed: .*coursenotexist"
    with pytest.raises(ExternalServiceError, match=failed):
        asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    current = asyncio.run(harness.orchestrator.get(enrollment_id))
    assert current.matriculated is False
    # One write for the matriculation, one for the revert.
    assert current.enrollment.version == 3
    assert harness.sender.sent == []
    assert asyncio.run(harness.lms_links.get(enrollment_id)) is None


class _SlowLms(InMemoryLmsClient):
    async def enroll(self, person, course):
        await asyncio.sleep(1)
        return await super().enroll(person, course)


def test_lms_timeout_is_an_lms_failure() -> None:
    h = make_harness(lms=_SlowLms(), timeout=0.05)
    enrollment_id = _paid_enrollment(h)

    failed = "lms enrollment failed: TimeoutError"
    with pytest.raises(ExternalServiceError, match=failed):
        asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))

    assert asyncio.run(h.orchestrator.get(enrollment_id)).matriculated is False


class _RevertFailsRepo(InMemoryEnrollmentRepo):
    async def update(self, enrollment_id, *, expected_version, changes):
        if changes == {"matriculated": False}:
            raise StaleEnrollmentError(enrollment_id)
        return await super().update(
            enrollment_id, expected_version=expected_version, changes=changes
        )


def test_failed_revert_is_reported_for_reconciliation(
    caplog: pytest.LogCaptureFixture,
) -> None:
    h = make_harness(enrollments=_RevertFailsRepo())
    enrollment_id = _paid_enrollment(h)
    h.lms.fail_enroll = LmsError("connection refused")
    before = (
        REGISTRY.get_sample_value(
            "reconciliation_events_total", {"operation": "revert_matriculation"}
        )
        or 0.0
    )

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ExternalServiceError, match="connection refused"):
            asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))

    records = [
        r
        for r in caplog.records
        if getattr(r, "event", None) == "reconciliation_needed"
    ]
    assert len(records) == 1
    assert records[0].enrollment_id == enrollment_id  # type: ignore[attr-defined]
    assert records[0].operation == "revert_matriculation"  # type: ignore[attr-defined]

    task = asyncio.run(h.tasks.dequeue(RECONCILIATION_QUEUE))
    assert task is not None
    assert task.payload == {
        "operation": "revert_matriculation",
        "enrollment_id": enrollment_id,
    }
    after = REGISTRY.get_sample_value(
        "reconciliation_events_total", {"operation": "revert_matriculation"}
    )
    assert after == before + 1


def test_no_channel_still_matriculates(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)

    detail = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True
    assert harness.sender.sent == []


def test_channel_without_link_still_matriculates(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    _with_channel(harness, link=None)

    detail = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True
    assert harness.sender.sent == []


def test_unconfigured_sender_still_matriculates() -> None:
    h = make_harness(sender=InMemoryNotificationSender(configured=False))
    enrollment_id = _paid_enrollment(h)
    _with_channel(h)

    detail = asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True
    assert h.sender.sent == []


def test_send_failure_still_matriculates(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    _with_channel(harness)
    harness.sender.fail_with = ConnectionError("smtp down")

    detail = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True
    assert asyncio.run(harness.orchestrator.get(enrollment_id)).matriculated is True


def test_undelivered_invitation_still_matriculates(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    _with_channel(harness)
    harness.sender.result = False

    detail = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True


class _BrokenChannels:
    async def exists_for_course(self, course_id):
        raise RuntimeError("directory unavailable")

    async def get_invitation_link(self, course_id):
        raise AssertionError("not reached")


def test_channel_lookup_failure_still_matriculates(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    invite = harness.orchestrator._triggers[1]
    invite._channels = _BrokenChannels()  # type: ignore[attr-defined]

    detail = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert detail.matriculated is True


# ---------------------------------------------------------------------------
# Idempotence and transitions
# ---------------------------------------------------------------------------


def test_matriculating_twice_runs_gate_and_triggers_once(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    _with_channel(harness)
    first = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))
    # Without invoices the gate would now refuse, so passing proves it was skipped.
    harness.invoices._by_id.clear()

    second = asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    assert second.enrollment == first.enrollment
    assert [c[0] for c in harness.lms.calls] == ["enroll"]
    assert len(harness.sender.sent) == 1


def test_unmatriculating_is_rejected(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    with pytest.raises(Conflict, match="cannot be undone"):
        asyncio.run(
            harness.orchestrator.update(
                enrollment_id, EnrollmentPatch(matriculated=False)
            )
        )

    assert asyncio.run(harness.orchestrator.get(enrollment_id)).matriculated is True


def test_false_on_unmatriculated_is_a_no_op(harness: Harness) -> None:
    enrollment_id = _create(harness).id

    detail = asyncio.run(
        harness.orchestrator.update(enrollment_id, EnrollmentPatch(matriculated=False))
    )

    assert detail.matriculated is False
    assert detail.enrollment.version == 1


def test_concurrent_matriculations_enroll_once(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)

    async def race():
        return await asyncio.gather(
            harness.orchestrator.update(enrollment_id, MATRICULATE),
            harness.orchestrator.update(enrollment_id, MATRICULATE),
        )

    first, second = asyncio.run(race())

    assert first.matriculated and second.matriculated
    assert [c[0] for c in harness.lms.calls] == ["enroll"]


# ---------------------------------------------------------------------------
# Discount
# ---------------------------------------------------------------------------


def test_assign_discount(harness: Harness) -> None:
    enrollment_id = _create(harness).id

    detail = asyncio.run(
        harness.orchestrator.update(enrollment_id, EnrollmentPatch(discount_id=1))
    )

    assert detail.discount is not None
    assert detail.discount.name == "Early bird"
    assert detail.enrollment.version == 2
    assert harness.lms.calls == []


def test_unknown_discount_not_found(harness: Harness) -> None:
    enrollment_id = _create(harness).id

    with pytest.raises(NotFound, match="discount 99 not found"):
        asyncio.run(
            harness.orchestrator.update(enrollment_id, EnrollmentPatch(discount_id=99))
        )


def test_discount_and_matriculation_in_one_write(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)

    detail = asyncio.run(
        harness.orchestrator.update(
            enrollment_id, EnrollmentPatch(discount_id=1, matriculated=True)
        )
    )

    assert detail.matriculated is True
    assert detail.discount is not None
    assert detail.enrollment.version == 2


def test_update_unknown_enrollment_not_found(harness: Harness) -> None:
    with pytest.raises(NotFound, match="enrollment 42 not found"):
        asyncio.run(harness.orchestrator.update(42, MATRICULATE))


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def test_delete_unmatriculated_skips_lms(harness: Harness) -> None:
    enrollment_id = _create(harness).id

    asyncio.run(harness.orchestrator.delete(enrollment_id))

    assert harness.lms.calls == []
    with pytest.raises(NotFound):
        asyncio.run(harness.orchestrator.get(enrollment_id))


def test_delete_matriculated_unenrolls_first(harness: Harness) -> None:
    enrollment_id = _paid_enrollment(harness)
    asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))

    asyncio.run(harness.orchestrator.delete(enrollment_id))

    assert [c[0] for c in harness.lms.calls] == ["enroll", "unenroll"]
    assert harness.lms.enrolled == set()
    assert asyncio.run(harness.enrollments.get_by_id(enrollment_id)) is None


def test_delete_proceeds_and_queues_retry_when_unenroll_fails(
    harness: Harness,
) -> None:
    enrollment_id = _paid_enrollment(harness)
    asyncio.run(harness.orchestrator.update(enrollment_id, MATRICULATE))
    harness.lms.fail_unenroll = LmsError("service unavailable")

    asyncio.run(harness.orchestrator.delete(enrollment_id))

    assert asyncio.run(harness.enrollments.get_by_id(enrollment_id)) is None
    task = asyncio.run(harness.tasks.dequeue(UNENROLL_RETRY_QUEUE))
    assert task is not None
    assert task.payload["operation"] == "unenroll"
    assert task.payload["enrollment_id"] == enrollment_id
    assert task.payload["person_id"] == PERSON.id
    assert task.payload["course_id"] == COURSE.id
    assert task.payload["lms_username"] == PERSON.email


def test_delete_blocked_when_unenroll_fails_under_block_policy() -> None:
    h = make_harness(unenroll_policy="block")
    enrollment_id = _paid_enrollment(h)
    asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))
    h.lms.fail_unenroll = LmsError("service unavailable")

    failed = "lms unenroll failed: service unavailable"
    with pytest.raises(ExternalServiceError, match=failed):
        asyncio.run(h.orchestrator.delete(enrollment_id))

    assert asyncio.run(h.enrollments.get_by_id(enrollment_id)) is not None
    assert asyncio.run(h.tasks.queue_length(UNENROLL_RETRY_QUEUE)) == 0


def test_delete_unknown_enrollment_not_found(harness: Harness) -> None:
    with pytest.raises(NotFound, match="enrollment 7 not found"):
        asyncio.run(harness.orchestrator.delete(7))


class _UnmarkableLinks(InMemoryLmsLinkRepo):
    async def set_status(self, enrollment_id: int, status: str) -> None:
        raise RuntimeError("db down")


def test_delete_completes_when_link_cannot_be_marked(
    caplog: pytest.LogCaptureFixture,
) -> None:
    h = make_harness(lms_links=_UnmarkableLinks())
    enrollment_id = _paid_enrollment(h)
    asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))

    with caplog.at_level(logging.ERROR):
        asyncio.run(h.orchestrator.delete(enrollment_id))

    assert asyncio.run(h.enrollments.get_by_id(enrollment_id)) is None
    assert h.lms.enrolled == set()
    assert "Could not mark LMS link unenrolled" in caplog.text


class _UnreadableLinks(InMemoryLmsLinkRepo):
    async def get(self, enrollment_id: int):
        raise RuntimeError("db down")


def test_delete_queues_retry_without_link_when_links_unreadable() -> None:
    h = make_harness(lms_links=_UnreadableLinks())
    enrollment_id = _paid_enrollment(h)
    asyncio.run(h.orchestrator.update(enrollment_id, MATRICULATE))
    h.lms.fail_unenroll = LmsError("service unavailable")

    asyncio.run(h.orchestrator.delete(enrollment_id))

    assert asyncio.run(h.enrollments.get_by_id(enrollment_id)) is None
    task = asyncio.run(h.tasks.dequeue(UNENROLL_RETRY_QUEUE))
    assert task is not None
    assert task.payload == {
        "operation": "unenroll",
        "enrollment_id": enrollment_id,
        "person_id": PERSON.id,
        "course_id": COURSE.id,
    }


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


def _three_enrollments(h: Harness) -> None:
    for person_id in (2, 3):
        h.references.add_person(
            Person(
                id=person_id,
                national_id=f"00000000{person_id}",
                first_names=f"Person {person_id}",
                last_names="Test",
                email=f"p{person_id}@example.com",
            )
        )
    for person_id, receipt_id in ((1, 1), (2, 2), (3, 3)):
        _create(h, person_id=person_id, receipt_id=receipt_id)


def test_list_defaults(harness: Harness) -> None:
    _three_enrollments(harness)

    page = asyncio.run(harness.orchestrator.list())

    assert page.page == 1
    assert page.limit == 10
    assert page.total == 3
    assert page.total_pages == 1
    assert [d.id for d in page.items] == [1, 2, 3]


def test_list_paginates_and_orders(harness: Harness) -> None:
    _three_enrollments(harness)

    page = asyncio.run(
        harness.orchestrator.list(page=2, limit=2, order_by="id", order="desc")
    )

    assert [d.id for d in page.items] == [1]
    assert page.total == 3
    assert page.total_pages == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"page": 0},
        {"limit": 0},
        {"limit": 101},
        {"order_by": "receipt_id; drop table"},
        {"order": "sideways"},
    ],
)
def test_list_rejects_bad_parameters(harness: Harness, kwargs: dict) -> None:
    with pytest.raises(InvalidRequest):
        asyncio.run(harness.orchestrator.list(**kwargs))


def test_get_resolves_references(harness: Harness) -> None:
    enrollment_id = _create(harness).id

    detail = asyncio.run(harness.orchestrator.get(enrollment_id))

    assert detail.billing.tax_id == "1712345678001"
    assert detail.discount is None
