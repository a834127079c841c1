"""
Database session management.

Sessions are NOT wrapped in an auto-committing begin() block: the services
commit explicitly once a state transition is complete, and only then publish
downstream events. Anything left uncommitted is rolled back when the
session closes.

Per-document serialization relies on SELECT ... FOR UPDATE issued by
DocumentRepository.get_for_update(); the row lock is held until the
owning service commits or rolls back.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docproc.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,          # detect stale connections before use
    pool_recycle=3600,           # recycle connections every hour
    echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
)

# Session factory: expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields a database session.

    Route handlers (via the services) own the commit. Exceptions raised by
    the handler roll back whatever was flushed, including idempotency claims.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Worker session (Celery tasks run outside FastAPI's dependency graph)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for Celery tasks.

    Each task runs its coroutine on a fresh event loop, so pooled asyncpg
    connections cannot be shared between runs. A NullPool engine is created
    per scope and disposed afterwards.
    """
    worker_engine = create_async_engine(
        settings.database_url,
        poolclass=NullPool,
        echo=settings.db_echo_sql,
    )
    try:
        async with AsyncSession(worker_engine, expire_on_commit=False, autoflush=False) as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
    finally:
        await worker_engine.dispose()


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /ready endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
