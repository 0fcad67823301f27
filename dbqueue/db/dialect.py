"""
Dialect-aware INSERT construction.

PostgreSQL and SQLite both support ON CONFLICT and RETURNING; each exposes
them through its own insert() construct.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def insert(session: AsyncSession, entity: Any) -> Any:
    """
    Build an INSERT for the session's dialect.

    Args:
        session: The async database session.
        entity: The mapped class or table to insert into.

    Returns:
        A dialect insert construct supporting on_conflict_do_nothing().
    """
    if dialect_name(session) == "sqlite":
        return sqlite.insert(entity)
    return postgresql.insert(entity)
