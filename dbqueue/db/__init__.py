"""
Database module.
Contains database connection, models, and repository implementations.
"""

from dbqueue.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    init_db,
    is_initialized,
    reset_after_fork,
)
from dbqueue.db.models import Base, Job

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "is_initialized",
    "reset_after_fork",
    "Job",
    "Base",
]
