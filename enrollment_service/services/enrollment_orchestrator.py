"""Enrollment lifecycle: create, matriculate, read, delete.

Update flow for a false -> true matriculation, all under the
enrollment's lock::

    load → discount check → MatriculationGate → write
         → required triggers (LMS)  ── failure → revert write, raise
         → best-effort triggers (messaging invitation)

Validation and gate errors abort before anything is written.  If the
revert itself fails the enrollment is left matriculated without an LMS
seat; that is reported as a `reconciliation_needed` event and queued for
the worker.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Literal

from enrollment_service.core.errors import (
    AppError,
    Conflict,
    DuplicateEnrollmentError,
    ExternalServiceError,
    InvalidRequest,
    NotFound,
    StaleEnrollmentError,
    UnknownError,
)
from enrollment_service.core.metrics import (
    MATRICULATION_ATTEMPTS,
    RECONCILIATION_EVENTS,
)
from enrollment_service.models.enrollment import (
    Enrollment,
    EnrollmentDetail,
    EnrollmentPage,
    EnrollmentPatch,
)
from enrollment_service.repos.channel_repo import MessagingChannelDirectory
from enrollment_service.repos.enrollment_repo import ORDERABLE_FIELDS, EnrollmentRepo
from enrollment_service.repos.invoice_repo import InvoiceRepo
from enrollment_service.repos.lms_link_repo import LmsLinkRepo
from enrollment_service.repos.reference_repo import ReferenceRepo
from enrollment_service.services.lms_client import LmsClient
from enrollment_service.services.lms_trigger import (
    LmsEnrollmentTrigger,
    LmsUnenrollHook,
    describe,
)
from enrollment_service.services.matriculation_gate import MatriculationGate
from enrollment_service.services.messaging_trigger import MessagingInvitationTrigger
from enrollment_service.services.notification_sender import NotificationSender
from enrollment_service.services.payment_gate import PaymentGate
from enrollment_service.services.precondition_validator import PreconditionValidator
from enrollment_service.services.task_queue import (
    RECONCILIATION_QUEUE,
    UNENROLL_RETRY_QUEUE,
    TaskQueue,
)
from enrollment_service.services.triggers import Trigger, run_triggers

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

UnenrollPolicy = Literal["proceed", "block"]


@contextmanager
def _unexpected_as_unknown(
    operation: str, enrollment_id: int | None = None
) -> Iterator[None]:
    """Wrap storage faults in UnknownError; domain errors pass through."""
    try:
        yield
    except (AppError, DuplicateEnrollmentError, StaleEnrollmentError):
        raise
    except Exception as exc:
        logger.exception(
            "%s failed",
            operation,
            extra={"operation": operation, "enrollment_id": enrollment_id},
        )
        raise UnknownError(operation, enrollment_id) from exc


class EnrollmentOrchestrator:
    def __init__(
        self,
        *,
        references: ReferenceRepo,
        enrollments: EnrollmentRepo,
        invoices: InvoiceRepo,
        lms: LmsClient,
        lms_links: LmsLinkRepo,
        channels: MessagingChannelDirectory,
        notifications: NotificationSender,
        tasks: TaskQueue,
        timeout: float = 5.0,
        unenroll_policy: UnenrollPolicy = "proceed",
    ) -> None:
        self._references = references
        self._enrollments = enrollments
        self._lms_links = lms_links
        self._tasks = tasks
        self._timeout = timeout
        self._unenroll_policy = unenroll_policy

        self._validator = PreconditionValidator(references, enrollments, timeout=timeout)
        self._gate = MatriculationGate(PaymentGate(invoices))
        self._triggers: list[Trigger] = [
            LmsEnrollmentTrigger(lms, lms_links, timeout=timeout),
            MessagingInvitationTrigger(channels, notifications, timeout=timeout),
        ]
        self._unenroll_hook = LmsUnenrollHook(lms, lms_links, timeout=timeout)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self, *, course_id: int, person_id: int, billing_id: int, receipt_id: int
    ) -> EnrollmentDetail:
        with _unexpected_as_unknown("validate enrollment"):
            await self._validator.validate(
                course_id=course_id,
                person_id=person_id,
                billing_id=billing_id,
                receipt_id=receipt_id,
            )

        try:
            with _unexpected_as_unknown("create enrollment"):
                enrollment = await self._enrollments.add(
                    course_id=course_id,
                    person_id=person_id,
                    billing_id=billing_id,
                    receipt_id=receipt_id,
                )
        except DuplicateEnrollmentError as exc:
            # Lost a race with a concurrent create that passed validation too.
            logger.warning("Concurrent duplicate rejected at write: %s", exc.field)
            if exc.field == "receipt_id":
                raise Conflict("receipt already assigned to another enrollment") from exc
            raise Conflict("person already enrolled in course") from exc

        logger.info(
            "Created enrollment=%d course=%d person=%d receipt=%d",
            enrollment.id,
            course_id,
            person_id,
            receipt_id,
            extra={"enrollment_id": enrollment.id, "course_id": course_id},
        )
        return await self._detail(enrollment)

    # ------------------------------------------------------------------
    # Update / matriculation
    # ------------------------------------------------------------------

    async def update(
        self, enrollment_id: int, patch: EnrollmentPatch
    ) -> EnrollmentDetail:
        async with self._enrollments.locked(enrollment_id):
            current = await self._load(enrollment_id)

            if patch.discount_id is not None:
                with _unexpected_as_unknown("load discount", enrollment_id):
                    async with asyncio.timeout(self._timeout):
                        discount = await self._references.get_discount(
                            patch.discount_id
                        )
                if discount is None:
                    raise NotFound("discount", patch.discount_id)

            if patch.matriculated is False and current.matriculated:
                raise Conflict(
                    f"enrollment {enrollment_id} is matriculated; "
                    "matriculation cannot be undone"
                )

            wants_matriculation = patch.matriculated is True and not current.matriculated
            if wants_matriculation:
                with _unexpected_as_unknown("check payment", enrollment_id):
                    await self._gate.check(
                        enrollment_id, current=current.matriculated, requested=True
                    )

            changes: dict[str, object] = {}
            if patch.discount_id is not None and patch.discount_id != current.discount_id:
                changes["discount_id"] = patch.discount_id
            if wants_matriculation:
                changes["matriculated"] = True

            updated = current
            if changes:
                updated = await self._write(current, changes)
                logger.info(
                    "Updated enrollment=%d fields=%s",
                    enrollment_id,
                    sorted(changes),
                    extra={"enrollment_id": enrollment_id},
                )

            detail = await self._detail(updated)
            if not wants_matriculation:
                return detail

            try:
                await run_triggers(self._triggers, detail)
            except ExternalServiceError:
                MATRICULATION_ATTEMPTS.labels(result="lms_failed").inc()
                await self._revert_matriculation(updated)
                raise

            MATRICULATION_ATTEMPTS.labels(result="matriculated").inc()
            logger.info(
                "Enrollment=%d matriculated",
                enrollment_id,
                extra={"enrollment_id": enrollment_id, "event": "matriculated"},
            )
            return detail

    async def _write(self, current: Enrollment, changes: dict[str, object]) -> Enrollment:
        try:
            with _unexpected_as_unknown("update enrollment", current.id):
                return await self._enrollments.update(
                    current.id, expected_version=current.version, changes=changes
                )
        except StaleEnrollmentError as exc:
            raise Conflict(
                f"enrollment {current.id} was modified concurrently, retry"
            ) from exc

    async def _revert_matriculation(self, written: Enrollment) -> None:
        try:
            await self._enrollments.update(
                written.id,
                expected_version=written.version,
                changes={"matriculated": False},
            )
        except Exception as exc:
            await self._report_reconciliation(
                RECONCILIATION_QUEUE,
                "revert_matriculation",
                written.id,
                exc,
                {"enrollment_id": written.id},
            )
            return
        logger.info(
            "Reverted matriculation of enrollment=%d after LMS failure",
            written.id,
            extra={"enrollment_id": written.id, "operation": "revert_matriculation"},
        )

    async def _report_reconciliation(
        self,
        queue: str,
        operation: str,
        enrollment_id: int,
        cause: BaseException,
        payload: dict,
    ) -> None:
        RECONCILIATION_EVENTS.labels(operation=operation).inc()
        logger.error(
            "reconciliation_needed enrollment=%d operation=%s cause=%s",
            enrollment_id,
            operation,
            describe(cause),
            extra={
                "event": "reconciliation_needed",
                "enrollment_id": enrollment_id,
                "operation": operation,
                "cause": describe(cause),
            },
        )
        try:
            await self._tasks.enqueue(queue, {"operation": operation, **payload})
        except Exception:
            # The error log above is the durable record when the queue is down.
            logger.exception(
                "Could not enqueue %s task for enrollment=%d", queue, enrollment_id
            )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, enrollment_id: int) -> None:
        async with self._enrollments.locked(enrollment_id):
            current = await self._load(enrollment_id)
            detail = await self._detail(current)

            try:
                await self._unenroll_hook.run(detail)
            except ExternalServiceError as exc:
                if self._unenroll_policy == "block":
                    logger.warning(
                        "Delete of enrollment=%d blocked: %s",
                        enrollment_id,
                        exc.message,
                        extra={"enrollment_id": enrollment_id},
                    )
                    raise
                logger.warning(
                    "Deleting enrollment=%d despite unenroll failure: %s",
                    enrollment_id,
                    exc.message,
                    extra={"enrollment_id": enrollment_id},
                )
                await self._report_reconciliation(
                    UNENROLL_RETRY_QUEUE,
                    "unenroll",
                    enrollment_id,
                    exc,
                    await self._unenroll_retry_payload(detail),
                )

            with _unexpected_as_unknown("delete enrollment", enrollment_id):
                await self._enrollments.delete(enrollment_id)
            logger.info(
                "Deleted enrollment=%d",
                enrollment_id,
                extra={"enrollment_id": enrollment_id},
            )

    async def _unenroll_retry_payload(self, detail: EnrollmentDetail) -> dict:
        # The local rows are gone by the time the worker retries.
        payload: dict = {
            "enrollment_id": detail.id,
            "person_id": detail.person.id,
            "course_id": detail.course.id,
        }
        try:
            link = await self._lms_links.get(detail.id)
        except Exception:
            # The worker falls back to resolving the seat by e-mail.
            logger.exception("Could not load LMS link for enrollment=%d", detail.id)
            return payload
        if link is not None:
            payload["lms_user_id"] = link.lms_user_id
            payload["lms_course_id"] = link.lms_course_id
            payload["lms_username"] = link.lms_username
        return payload

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, enrollment_id: int) -> EnrollmentDetail:
        return await self._detail(await self._load(enrollment_id))

    async def list(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        order_by: str = "enrolled_at",
        order: str = "asc",
    ) -> EnrollmentPage:
        if page < 1:
            raise InvalidRequest("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidRequest(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if order_by not in ORDERABLE_FIELDS:
            raise InvalidRequest(
                f"order_by must be one of {', '.join(ORDERABLE_FIELDS)}"
            )
        if order not in ("asc", "desc"):
            raise InvalidRequest("order must be asc or desc")

        with _unexpected_as_unknown("list enrollments"):
            enrollments, total = await self._enrollments.list_page(
                offset=(page - 1) * limit,
                limit=limit,
                order_by=order_by,
                descending=order == "desc",
            )
        items = [await self._detail(e) for e in enrollments]
        return EnrollmentPage(items=items, total=total, page=page, limit=limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, enrollment_id: int) -> Enrollment:
        with _unexpected_as_unknown("load enrollment", enrollment_id):
            enrollment = await self._enrollments.get_by_id(enrollment_id)
        if enrollment is None:
            raise NotFound("enrollment", enrollment_id)
        return enrollment

    async def _detail(self, enrollment: Enrollment) -> EnrollmentDetail:
        refs = self._references
        with _unexpected_as_unknown("resolve references", enrollment.id):
            async with asyncio.timeout(self._timeout):
                course, person, billing, receipt = await asyncio.gather(
                    refs.get_course(enrollment.course_id),
                    refs.get_person(enrollment.person_id),
                    refs.get_billing(enrollment.billing_id),
                    refs.get_receipt(enrollment.receipt_id),
                )
                discount = None
                if enrollment.discount_id is not None:
                    discount = await refs.get_discount(enrollment.discount_id)

        if course is None or person is None or billing is None or receipt is None:
            # Foreign keys make this unreachable with a real database.
            logger.error(
                "Enrollment=%d references a missing record",
                enrollment.id,
                extra={"enrollment_id": enrollment.id},
            )
            raise UnknownError("resolve references", enrollment.id)

        return EnrollmentDetail(
            enrollment=enrollment,
            course=course,
            person=person,
            billing=billing,
            receipt=receipt,
            discount=discount,
        )
