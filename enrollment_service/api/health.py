"""Health and readiness endpoints.

  /health  liveness plus per-dependency status; always 200, the body's
           `status` says "ok" or "degraded".
  /ready   503 while the database is unreachable.  Redis and the LMS are
           not critical: enrollments can be read and created without them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from sqlalchemy import text

from enrollment_service.core.config import SETTINGS
from enrollment_service.db.engine import engine
from enrollment_service.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_database() -> str:
    if engine is None:
        return "not_configured"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception as exc:
        logger.warning("Redis health check failed: %s", exc)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
        "lms": "configured" if SETTINGS.lms_configured else "not_configured",
        "smtp": "configured" if SETTINGS.smtp_host else "not_configured",
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    if await _check_database() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)
