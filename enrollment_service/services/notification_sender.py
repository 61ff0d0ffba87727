"""E-mail delivery of course channel invitations via aiosmtplib.

Configured from SMTP_* settings; without a host and a from-address
the sender reports itself unconfigured and the invitation is skipped.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Protocol

import aiosmtplib

from enrollment_service.core.config import SETTINGS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InvitationPayload:
    first_names: str
    last_names: str
    course_name: str
    invitation_link: str
    start_date: str  # dd/mm/yyyy


class NotificationSender(Protocol):
    def is_configured(self) -> bool: ...
    async def send_invitation(self, address: str, payload: InvitationPayload) -> bool: ...


def _plain_body(p: InvitationPayload) -> str:
    return (
        f"Hello {p.first_names} {p.last_names},\n\n"
        f"You are now matriculated in {p.course_name}, starting {p.start_date}.\n"
        f"Join the course group here: {p.invitation_link}\n"
    )


def _html_body(p: InvitationPayload) -> str:
    name = html.escape(f"{p.first_names} {p.last_names}")
    course = html.escape(p.course_name)
    link = html.escape(p.invitation_link, quote=True)
    return (
        "<html><body>"
        f"<p>Hello {name},</p>"
        f"<p>You are now matriculated in <strong>{course}</strong>, "
        f"starting {html.escape(p.start_date)}.</p>"
        f'<p><a href="{link}">Join the course group</a></p>'
        "</body></html>"
    )


class SmtpNotificationSender:
    def __init__(
        self,
        *,
        host: str | None,
        port: int,
        username: str | None,
        password: str | None,
        from_email: str | None,
        use_tls: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_email = from_email
        self._use_tls = use_tls
        self._timeout = timeout

    def is_configured(self) -> bool:
        return bool(self._host and self._from_email)

    def build_message(self, address: str, payload: InvitationPayload) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = f"Invitation to {payload.course_name}"
        message["From"] = self._from_email or ""
        message["To"] = address
        message["Message-ID"] = make_msgid()
        message.attach(MIMEText(_plain_body(payload), "plain", "utf-8"))
        message.attach(MIMEText(_html_body(payload), "html", "utf-8"))
        return message

    async def send_invitation(self, address: str, payload: InvitationPayload) -> bool:
        if not self.is_configured():
            return False

        message = self.build_message(address, payload)
        try:
            await aiosmtplib.send(
                message,
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                start_tls=self._use_tls,
                timeout=self._timeout,
            )
        except aiosmtplib.SMTPException as exc:
            logger.warning("Invitation e-mail to %s failed: %s", address, exc)
            return False

        logger.info("Invitation e-mail sent to %s for %s", address, payload.course_name)
        return True


class InMemoryNotificationSender:
    """Collects invitations instead of sending them."""

    def __init__(self, *, configured: bool = True) -> None:
        self.configured = configured
        self.sent: list[tuple[str, InvitationPayload]] = []
        self.fail_with: Exception | None = None
        self.result = True

    def is_configured(self) -> bool:
        return self.configured

    async def send_invitation(self, address: str, payload: InvitationPayload) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((address, payload))
        return self.result


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if SETTINGS.smtp_host:
    notification_sender: SmtpNotificationSender | InMemoryNotificationSender = (
        SmtpNotificationSender(
            host=SETTINGS.smtp_host,
            port=SETTINGS.smtp_port,
            username=SETTINGS.smtp_username,
            password=SETTINGS.smtp_password,
            from_email=SETTINGS.smtp_from_email,
            use_tls=SETTINGS.smtp_use_tls,
            timeout=SETTINGS.external_call_timeout_seconds,
        )
    )
else:
    # No SMTP: invitations are recorded but the trigger treats them as skipped.
    notification_sender = InMemoryNotificationSender(configured=False)
