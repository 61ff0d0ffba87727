from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from enrollment_service.api.enrollments import router as enrollments_router
from enrollment_service.api.health import router as health_router
from enrollment_service.api.metrics_endpoint import router as metrics_router
from enrollment_service.core.config import SETTINGS
from enrollment_service.core.errors import AppError
from enrollment_service.core.logging import setup_logging
from enrollment_service.db.engine import lifespan_db
from enrollment_service.db.redis import lifespan_redis
from enrollment_service.middleware.metrics import MetricsMiddleware
from enrollment_service.middleware.request_context import RequestContextMiddleware
from enrollment_service.services.lms_client import lms_client

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Nested so teardown runs in reverse order even if one fails.
    async with lifespan_db():
        async with lifespan_redis():
            try:
                yield
            finally:
                await lms_client.aclose()


app = FastAPI(
    title="enrollment-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.kind},
    )


# Last-added runs first: RequestContext (outermost) → Metrics → route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(enrollments_router)

logger.info(
    "enrollment-service started  env=%s log_level=%s port=%d lms=%s unenroll_policy=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "moodle" if SETTINGS.lms_configured else "in-memory",
    SETTINGS.unenroll_failure_policy,
)
