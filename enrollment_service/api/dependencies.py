from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_service.core.config import SETTINGS
from enrollment_service.db.engine import async_session_factory, unit_of_work
from enrollment_service.models.principal import Principal
from enrollment_service.repos.memory_stores import memory
from enrollment_service.repos.pg_channel_repo import PgChannelDirectory
from enrollment_service.repos.pg_enrollment_repo import PgEnrollmentRepo
from enrollment_service.repos.pg_invoice_repo import PgInvoiceRepo
from enrollment_service.repos.pg_lms_link_repo import PgLmsLinkRepo
from enrollment_service.repos.pg_reference_repo import PgReferenceRepo
from enrollment_service.services import token_service
from enrollment_service.services.enrollment_orchestrator import EnrollmentOrchestrator
from enrollment_service.services.lms_client import lms_client
from enrollment_service.services.notification_sender import notification_sender
from enrollment_service.services.task_queue import task_queue

logger = logging.getLogger(__name__)

# Tokens are issued by the identity provider, not by this service.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")


def require_user(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Extract and validate the JWT bearer token. Returns a Principal."""
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    return Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
    )


def require_any_role(roles: set[str]):
    """Dependency factory: demand at least one of the given roles.

    Usage: Depends(require_any_role({"admin", "accountant"}))
    """

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_any_role(roles):
            logger.warning(
                "Access denied: user=%s has none of roles=%s",
                principal.user_id,
                roles,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


# ---------------------------------------------------------------------------
# Orchestrator wiring
# ---------------------------------------------------------------------------


def _memory_orchestrator() -> EnrollmentOrchestrator:
    return EnrollmentOrchestrator(
        references=memory.references,
        enrollments=memory.enrollments,
        invoices=memory.invoices,
        lms=lms_client,
        lms_links=memory.lms_links,
        channels=memory.channels,
        notifications=notification_sender,
        tasks=task_queue,
        timeout=SETTINGS.external_call_timeout_seconds,
        unenroll_policy=SETTINGS.unenroll_failure_policy,
    )


def _pg_orchestrator(session: AsyncSession) -> EnrollmentOrchestrator:
    return EnrollmentOrchestrator(
        references=PgReferenceRepo(async_session_factory),
        enrollments=PgEnrollmentRepo(session),
        invoices=PgInvoiceRepo(session),
        lms=lms_client,
        lms_links=PgLmsLinkRepo(session),
        channels=PgChannelDirectory(async_session_factory),
        notifications=notification_sender,
        tasks=task_queue,
        timeout=SETTINGS.external_call_timeout_seconds,
        unenroll_policy=SETTINGS.unenroll_failure_policy,
    )


async def get_orchestrator() -> AsyncGenerator[EnrollmentOrchestrator, None]:
    """Request-scoped orchestrator.

    With a database, all enrollment writes and row locks of one request
    share a single transaction, committed after the handler returns.
    """
    if async_session_factory is None:
        yield _memory_orchestrator()
        return

    async with unit_of_work() as session:
        yield _pg_orchestrator(session)
