"""
Database Session Management
===========================

Engine, session factory and the request-scoped ``get_db`` dependency.

Writes never go through ``get_db``: the entitlement pipeline opens its own
short transaction per event from ``get_session_factory()``. Request
sessions are read-only and always rolled back.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import inspect
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from entitlement_engine.config import settings
from entitlement_engine.db.base import Base

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Postgres gets a sized pool with pre-ping: pipeline transactions hold
    row locks, so a dead pooled connection must fail before the first
    ``SELECT ... FOR UPDATE``, not halfway through. SQLite (local runs)
    uses the driver's default pool.
    """
    global _engine

    if _engine is None:
        if not settings.database_url_async:
            raise ValueError(
                "Database URL not configured. "
                "Please set DATABASE_URL environment variable."
            )

        url = make_url(settings.database_url_async)
        options: dict = {"echo": settings.DATABASE_ECHO}
        if url.get_backend_name() != "sqlite":
            options.update(
                pool_size=settings.DATABASE_POOL_SIZE,
                max_overflow=settings.DATABASE_MAX_OVERFLOW,
                pool_pre_ping=True,
                pool_recycle=300,
                pool_timeout=30,
            )
        _engine = create_async_engine(url, **options)

    return _engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the settings every caller relies on."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())

    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Read-only request session."""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.rollback()


async def init_db() -> None:
    """
    Connect once and check that migrations have been applied.

    Called on application startup. Missing tables are logged, not raised,
    so ``/health`` still answers.
    """
    async with get_engine().connect() as conn:
        existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        logger.error(
            "Database is missing tables %s; run 'alembic upgrade head'",
            ", ".join(missing),
        )
    else:
        logger.info("Database connection established (%d tables)", len(existing))


async def close_db() -> None:
    """
    Close database connections.

    Called on application shutdown to clean up resources.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
