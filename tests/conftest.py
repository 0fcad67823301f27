"""
Pytest configuration and shared fixtures.

Database tests run against TEST_DATABASE_URL when set (PostgreSQL), or a
temporary SQLite file through aiosqlite otherwise.
"""

import os
import tempfile
from collections.abc import AsyncGenerator, Callable, Iterator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

_sqlite_dir = tempfile.mkdtemp(prefix="dbqueue-tests-")

# Test database URL - a throwaway SQLite file unless PostgreSQL is configured
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(_sqlite_dir, 'dbqueue.db')}",
)

# Set DATABASE_URL environment variable BEFORE any imports that might initialize the database
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("LOG_FORMAT", "console")

from dbqueue.config import Settings, get_settings  # noqa: E402
from dbqueue.db import close_db, get_engine, get_session_context, init_db  # noqa: E402
from dbqueue.db.models import Base  # noqa: E402
from dbqueue.worker import handlers  # noqa: E402

get_settings.cache_clear()


def is_postgres() -> bool:
    return TEST_DATABASE_URL.startswith("postgresql")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests marked postgres unless TEST_DATABASE_URL points at PostgreSQL."""
    if is_postgres():
        return
    skip = pytest.mark.skip(reason="needs concurrent row locking (PostgreSQL TEST_DATABASE_URL)")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def database_url() -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[None]:
    """Initialize the database with a fresh schema for one test."""
    await init_db(database_url)
    engine = get_engine()
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession]:
    """
    A session committed when the test ends.

    Tests that also call client functions should commit first; SQLite
    allows one writer at a time.
    """
    async with get_session_context() as session:
        yield session


@pytest.fixture
def settings() -> Iterator[Callable[..., Settings]]:
    """
    Override settings for one test.

    Usage: settings(preserve_finished_jobs=False)
    """
    original = get_settings()
    applied: list[str] = []

    def apply(**overrides: Any) -> Settings:
        for key, value in overrides.items():
            setattr(original, key, value)
            applied.append(key)
        return original

    snapshot = {name: getattr(original, name) for name in type(original).model_fields}
    yield apply

    for key in applied:
        setattr(original, key, snapshot[key])


@pytest.fixture
def register() -> Iterator[Callable[..., Callable]]:
    """Register job handlers for one test."""
    registered: list[str] = []

    def apply(job_type: str, concurrency: handlers.ConcurrencyControls | None = None):
        registered.append(job_type)
        return handlers.register_handler(job_type, concurrency)

    yield apply

    for job_type in registered:
        handlers.unregister_handler(job_type)
