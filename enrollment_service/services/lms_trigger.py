"""LMS side of matriculation: enroll on the way in, unenroll on delete."""

from __future__ import annotations

import asyncio
import logging

from enrollment_service.core.errors import ExternalServiceError
from enrollment_service.models.enrollment import EnrollmentDetail
from enrollment_service.models.invoice import LmsEnrollmentLink
from enrollment_service.repos.lms_link_repo import LmsLinkRepo
from enrollment_service.services.lms_client import LmsClient, LmsEnrollmentRef
from enrollment_service.services.triggers import TriggerKind

logger = logging.getLogger(__name__)


def describe(exc: BaseException) -> str:
    # TimeoutError and friends stringify to "".
    return str(exc) or type(exc).__name__


class LmsEnrollmentTrigger:
    """Enrolls the person in the course's LMS counterpart.

    Any failure surfaces as ExternalServiceError so the orchestrator can
    revert the matriculation.  An "already enrolled" answer is a success.
    """

    name = "lms_enrollment"
    kind = TriggerKind.REQUIRED

    def __init__(
        self, client: LmsClient, links: LmsLinkRepo, *, timeout: float = 5.0
    ) -> None:
        self._client = client
        self._links = links
        self._timeout = timeout

    async def run(self, detail: EnrollmentDetail) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                ref = await self._client.enroll(detail.person, detail.course)
        except Exception as exc:
            raise ExternalServiceError(
                f"lms enrollment failed: {describe(exc)}"
            ) from exc

        logger.info(
            "Enrollment=%d enrolled on LMS user=%d course=%d%s",
            detail.id,
            ref.user_id,
            ref.course_id,
            " (already enrolled)" if ref.already_enrolled else "",
            extra={"enrollment_id": detail.id},
        )

        link = LmsEnrollmentLink(
            enrollment_id=detail.id,
            lms_user_id=ref.user_id,
            lms_course_id=ref.course_id,
            lms_username=ref.username,
        )
        try:
            await self._links.save(link)
        except Exception:
            # The remote enrollment exists; unenroll can still resolve it by e-mail.
            logger.exception(
                "Could not record LMS link for enrollment=%d",
                detail.id,
                extra={"enrollment_id": detail.id},
            )


class LmsUnenrollHook:
    """Removes the remote enrollment before the local record is deleted.

    Unmatriculated enrollments were never sent to the LMS and are skipped.
    """

    def __init__(
        self, client: LmsClient, links: LmsLinkRepo, *, timeout: float = 5.0
    ) -> None:
        self._client = client
        self._links = links
        self._timeout = timeout

    async def run(self, detail: EnrollmentDetail) -> None:
        if not detail.matriculated:
            return

        ref = None
        try:
            link = await self._links.get(detail.id)
        except Exception:
            # The client can still resolve the seat from the person's e-mail.
            logger.exception(
                "Could not load LMS link for enrollment=%d",
                detail.id,
                extra={"enrollment_id": detail.id},
            )
            link = None
        if link is not None:
            ref = LmsEnrollmentRef(
                user_id=link.lms_user_id,
                course_id=link.lms_course_id,
                username=link.lms_username,
            )

        try:
            async with asyncio.timeout(self._timeout):
                await self._client.unenroll(detail.person, detail.course, ref=ref)
        except Exception as exc:
            raise ExternalServiceError(f"lms unenroll failed: {describe(exc)}") from exc

        logger.info(
            "Enrollment=%d unenrolled from LMS",
            detail.id,
            extra={"enrollment_id": detail.id},
        )
        if link is None:
            return
        try:
            await self._links.set_status(detail.id, "unenrolled")
        except Exception:
            logger.exception(
                "Could not mark LMS link unenrolled for enrollment=%d",
                detail.id,
                extra={"enrollment_id": detail.id},
            )
