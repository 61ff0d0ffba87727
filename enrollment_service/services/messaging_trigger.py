from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime

from enrollment_service.models.enrollment import EnrollmentDetail
from enrollment_service.repos.channel_repo import MessagingChannelDirectory
from enrollment_service.services.notification_sender import (
    InvitationPayload,
    NotificationSender,
)
from enrollment_service.services.triggers import TriggerKind

logger = logging.getLogger(__name__)


def format_start_date(value: date | datetime) -> str:
    """dd/mm/yyyy, read in UTC when the value carries a time."""
    if isinstance(value, datetime):
        value = value.astimezone(UTC) if value.tzinfo else value
    return value.strftime("%d/%m/%Y")


class MessagingInvitationTrigger:
    """E-mails the course channel invitation link to the new student.

    Each missing piece (channel, link, mail configuration) ends the run
    quietly; errors are left to the best-effort dispatcher.
    """

    name = "messaging_invitation"
    kind = TriggerKind.BEST_EFFORT

    def __init__(
        self,
        channels: MessagingChannelDirectory,
        sender: NotificationSender,
        *,
        timeout: float = 5.0,
    ) -> None:
        self._channels = channels
        self._sender = sender
        self._timeout = timeout

    async def run(self, detail: EnrollmentDetail) -> None:
        course = detail.course

        async with asyncio.timeout(self._timeout):
            has_channel = await self._channels.exists_for_course(course.id)
        if not has_channel:
            logger.info("No messaging channel for course=%d, skipping invite", course.id)
            return

        async with asyncio.timeout(self._timeout):
            link = await self._channels.get_invitation_link(course.id)
        if not link:
            logger.info("Channel for course=%d has no invitation link", course.id)
            return

        if not self._sender.is_configured():
            logger.info(
                "Notifications not configured, invite for enrollment=%d skipped",
                detail.id,
            )
            return

        payload = InvitationPayload(
            first_names=detail.person.first_names,
            last_names=detail.person.last_names,
            course_name=course.name,
            invitation_link=link,
            start_date=format_start_date(course.start_date),
        )
        async with asyncio.timeout(self._timeout):
            sent = await self._sender.send_invitation(detail.person.email, payload)

        if sent:
            logger.info(
                "Invitation sent for enrollment=%d",
                detail.id,
                extra={"enrollment_id": detail.id},
            )
        else:
            logger.warning(
                "Invitation for enrollment=%d was not delivered",
                detail.id,
                extra={"enrollment_id": detail.id},
            )
