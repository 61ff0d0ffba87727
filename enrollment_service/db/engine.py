"""Async SQLAlchemy engine, session factory and unit of work.

With DATABASE_URL set, enrollments, invoices and LMS links live in
PostgreSQL (asyncpg).  Without it every export below is None and the
service runs on the in-memory stores in ``repos/memory_stores.py``.

Two kinds of session are handed out:

- ``unit_of_work()``: one per API request or worker task.  Enrollment
  writes, the enrollment row lock and the invoice share lock all live in
  this transaction.
- ``async_session_factory()`` directly: short read-only sessions for
  reference and messaging-channel lookups, which run concurrently and
  must stay outside the unit of work.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from enrollment_service.core.config import SETTINGS

logger = logging.getLogger(__name__)

# Per unit of work: the request session plus up to four concurrent
# reference lookups and one channel lookup.
POOL_SIZE = 10
MAX_OVERFLOW = 20


class Base(DeclarativeBase):
    """Declarative base for the enrollment tables."""


if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,  # log SQL in dev only
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        # The worker holds the pool across long idle waits on its queues.
        pool_pre_ping=True,
    )
    async_session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def unit_of_work() -> AsyncIterator[AsyncSession]:
    """One transaction: commit when the block exits cleanly, else roll back.

    Row locks taken inside (enrollment FOR UPDATE, invoices FOR SHARE) are
    held until the commit, so a matriculation gate check and its write
    see the same invoices.
    """
    if async_session_factory is None:
        raise RuntimeError("DATABASE_URL is not configured; no unit of work")
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def lifespan_db():
    """Startup/shutdown hook for the database engine."""
    if engine is None:
        logger.info("No DATABASE_URL configured, enrollments are kept in memory")
        yield
        return

    logger.info(
        "Database engine created: %s (pool_size=%d, max_overflow=%d)",
        engine.url,
        POOL_SIZE,
        MAX_OVERFLOW,
    )
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
