"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from dbqueue.config import get_settings
from dbqueue.observability.tracing import instrument_sqlalchemy

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def create_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite engines get a NullPool, a busy timeout and foreign keys enabled,
    so ON DELETE CASCADE behaves as it does on PostgreSQL.

    Args:
        database_url: The database URL.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = get_settings()

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG" and not settings.silence_polling,
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_engine(get_settings().database_url)
    return _engine


async def init_db(database_url: str | None = None) -> None:
    """
    Initialize the database connection and session factory.
    Should be called when a process boots.

    Args:
        database_url: Optional URL overriding the configured one.
    """
    global _engine, AsyncSessionLocal
    if database_url is not None:
        _engine = create_engine(database_url)
    engine = get_engine()
    if get_settings().tracing_enabled:
        instrument_sqlalchemy(engine)
    AsyncSessionLocal = _session_factory(engine)
    logger.info("Database connection initialized")


async def close_db() -> None:
    """
    Close the database connection.
    Should be called when a process shuts down.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


def reset_after_fork() -> None:
    """
    Replace the engine inherited from a parent process.

    Called in a freshly forked child: pooled connections belong to the
    parent and are dereferenced without being closed. The child gets a
    new engine for the same URL.
    """
    global _engine, AsyncSessionLocal
    if _engine is None:
        return
    database_url = _engine.url.render_as_string(hide_password=False)
    _engine.sync_engine.dispose(close=False)
    _engine = create_engine(database_url)
    AsyncSessionLocal = _session_factory(_engine)


def is_initialized() -> bool:
    return AsyncSessionLocal is not None


def _session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Context manager for getting async database sessions.
    Commits on success and rolls back if the block raises.

    Yields:
        AsyncSession: An async database session.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
