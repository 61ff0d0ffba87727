"""Background worker: repairs what the API could not finish.

RUN:  python -m enrollment_service.worker

Same image as the API, different command:
  api:    uvicorn enrollment_service.main:app --host 0.0.0.0 --port 8000
  worker: python -m enrollment_service.worker

Queues:
  lms_reconciliation   an LMS enrollment failed and the matriculation
                       revert failed too; retry the revert.
  lms_unenroll_retry   an enrollment was deleted while the LMS was
                       unreachable; retry the remote unenroll.

A failed task is re-enqueued with an attempt counter, up to
MAX_ATTEMPTS; after that it is dropped with an ERROR log.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from enrollment_service.core.config import SETTINGS
from enrollment_service.core.logging import setup_logging
from enrollment_service.core.metrics import QUEUE_DEPTH
from enrollment_service.db.engine import async_session_factory, unit_of_work
from enrollment_service.repos.enrollment_repo import EnrollmentRepo
from enrollment_service.repos.lms_link_repo import LmsLinkRepo
from enrollment_service.repos.memory_stores import memory
from enrollment_service.repos.pg_enrollment_repo import PgEnrollmentRepo
from enrollment_service.repos.pg_lms_link_repo import PgLmsLinkRepo
from enrollment_service.repos.pg_reference_repo import PgReferenceRepo
from enrollment_service.repos.reference_repo import ReferenceRepo
from enrollment_service.services.lms_client import LmsEnrollmentRef, lms_client
from enrollment_service.services.task_queue import (
    RECONCILIATION_QUEUE,
    UNENROLL_RETRY_QUEUE,
    task_queue,
)

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("worker")

MAX_ATTEMPTS = 5


@dataclass
class _Stores:
    enrollments: EnrollmentRepo
    references: ReferenceRepo
    lms_links: LmsLinkRepo


@asynccontextmanager
async def _stores() -> AsyncIterator[_Stores]:
    """One unit of work per task: a transaction with a database, else memory."""
    if async_session_factory is None:
        yield _Stores(memory.enrollments, memory.references, memory.lms_links)
        return

    async with unit_of_work() as session:
        yield _Stores(
            PgEnrollmentRepo(session),
            PgReferenceRepo(async_session_factory),
            PgLmsLinkRepo(session),
        )


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(RECONCILIATION_QUEUE)
async def handle_reconciliation(payload: dict) -> None:
    enrollment_id = int(payload["enrollment_id"])
    async with _stores() as stores:
        async with stores.enrollments.locked(enrollment_id):
            enrollment = await stores.enrollments.get_by_id(enrollment_id)
            if enrollment is None or not enrollment.matriculated:
                logger.info(
                    "Enrollment=%d already consistent, nothing to reconcile",
                    enrollment_id,
                )
                return

            link = await stores.lms_links.get(enrollment_id)
            if link is not None and link.status == "enrolled":
                # A later matriculation succeeded on the LMS; keep it.
                logger.info(
                    "Enrollment=%d has an LMS seat, keeping matriculation",
                    enrollment_id,
                )
                return

            await stores.enrollments.update(
                enrollment_id,
                expected_version=enrollment.version,
                changes={"matriculated": False},
            )
    logger.info(
        "Reconciled enrollment=%d: matriculation reverted",
        enrollment_id,
        extra={"enrollment_id": enrollment_id, "operation": "revert_matriculation"},
    )


@register_handler(UNENROLL_RETRY_QUEUE)
async def handle_unenroll_retry(payload: dict) -> None:
    enrollment_id = int(payload["enrollment_id"])
    async with _stores() as stores:
        course = await stores.references.get_course(int(payload["course_id"]))
        person = await stores.references.get_person(int(payload["person_id"]))

    if course is None or person is None:
        logger.warning(
            "Cannot retry unenroll for enrollment=%d: person or course is gone",
            enrollment_id,
        )
        return

    ref = None
    if "lms_user_id" in payload:
        ref = LmsEnrollmentRef(
            user_id=int(payload["lms_user_id"]),
            course_id=int(payload["lms_course_id"]),
            username=str(payload.get("lms_username", "")),
        )

    async with asyncio.timeout(SETTINGS.external_call_timeout_seconds):
        await lms_client.unenroll(person, course, ref=ref)
    logger.info(
        "Unenroll retry succeeded for deleted enrollment=%d",
        enrollment_id,
        extra={"enrollment_id": enrollment_id, "operation": "unenroll"},
    )


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def process_next(queue_name: str, *, timeout: int = 1) -> bool:
    """Handle one task from `queue_name`. Returns False when the queue was empty."""
    task = await task_queue.dequeue(queue_name, timeout=timeout)
    if task is None:
        return False

    handler = HANDLERS[queue_name]
    try:
        await handler(task.payload)
        logger.info("Task %s on [%s] completed", task.id, queue_name)
    except Exception:
        attempts = int(task.payload.get("attempts", 0)) + 1
        if attempts >= MAX_ATTEMPTS:
            logger.exception(
                "Task %s on [%s] failed %d times, giving up",
                task.id,
                queue_name,
                attempts,
                extra={
                    "event": "reconciliation_needed",
                    "enrollment_id": task.payload.get("enrollment_id"),
                },
            )
        else:
            logger.warning(
                "Task %s on [%s] failed (attempt %d), re-enqueued",
                task.id,
                queue_name,
                attempts,
                exc_info=True,
            )
            await task_queue.enqueue(queue_name, {**task.payload, "attempts": attempts})
    return True


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started — listening on queues: %s", queues)

    try:
        while True:
            handled = False
            for queue_name in queues:
                QUEUE_DEPTH.labels(queue_name=queue_name).set(
                    await task_queue.queue_length(queue_name)
                )
                handled = await process_next(queue_name) or handled
            if not handled:
                # The in-memory queue does not block on dequeue.
                await asyncio.sleep(1)
    finally:
        await lms_client.aclose()


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
