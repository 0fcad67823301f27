"""
SQLAlchemy database models.
Defines the job, execution, semaphore, process and recurring task tables.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dbqueue.constants import (
    ConcurrencyConflict,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE_NAME,
)
from dbqueue.utils import utcnow

# SQLite only autoincrements INTEGER PRIMARY KEY columns
Identifier = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    The job row itself is immutable during its lifetime except for
    finished_at; its state lives in exactly one execution table at a time
    (ready, claimed, scheduled, blocked or failed).
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)

    queue_name: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DEFAULT_QUEUE_NAME
    )
    job_type: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    arguments: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_PRIORITY
    )

    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )

    # Concurrency controls
    concurrency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    concurrency_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    concurrency_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    concurrency_on_conflict: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConcurrencyConflict.BLOCK.value
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_jobs_for_filtering", "queue_name", "finished_at"),
        Index("ix_jobs_for_alerting", "scheduled_at", "finished_at"),
    )

    @property
    def concurrency_limited(self) -> bool:
        return bool(self.concurrency_key) and (self.concurrency_limit or 0) > 0

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_at is None or self.scheduled_at <= now

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, queue={self.queue_name}, "
            f"priority={self.priority})"
        )


class ReadyExecution(Base):
    """A job immediately eligible for claiming."""

    __tablename__ = "ready_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_ready_executions_poll_all", "priority", "job_id"),
        Index("ix_ready_executions_poll_by_queue", "queue_name", "priority", "job_id"),
    )


class ClaimedExecution(Base):
    """A job owned by one process."""

    __tablename__ = "claimed_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    # No foreign key: claims outlive a deleted process row until recovered.
    process_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_claimed_executions_process_id_job_id", "process_id", "job_id"),
    )


class ScheduledExecution(Base):
    """A job waiting for its scheduled_at."""

    __tablename__ = "scheduled_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_scheduled_executions_dispatch_all", "scheduled_at", "priority", "job_id"),
    )


class BlockedExecution(Base):
    """A job waiting for a concurrency slot."""

    __tablename__ = "blocked_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    concurrency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_blocked_executions_for_release", "concurrency_key", "priority", "job_id"),
        Index("ix_blocked_executions_for_maintenance", "expires_at", "concurrency_key"),
    )


class FailedExecution(Base):
    """A job whose execution raised, kept until retried or discarded."""

    __tablename__ = "failed_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    error: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    @property
    def exception_class(self) -> str | None:
        return (self.error or {}).get("exception_class")

    @property
    def message(self) -> str | None:
        return (self.error or {}).get("message")

    @property
    def backtrace(self) -> list[str]:
        return (self.error or {}).get("backtrace") or []


class Semaphore(Base):
    """Counting semaphore bounding concurrent executions sharing a key."""

    __tablename__ = "semaphores"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_semaphores_key_value", "key", "value"),)


class Process(Base):
    """
    A registered worker, dispatcher, scheduler or supervisor.

    Supervised processes point at their supervisor through supervisor_id;
    the hierarchy is only ever navigated with queries.
    """

    __tablename__ = "processes"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, index=True
    )
    supervisor_id: Mapped[int | None] = mapped_column(
        ForeignKey("processes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # "metadata" is reserved on declarative classes
    process_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"Process(id={self.id}, kind={self.kind}, name={self.name}, pid={self.pid})"


class RecurringTask(Base):
    """A cron-scheduled job definition."""

    __tablename__ = "recurring_tasks"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    schedule: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    arguments: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    queue_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    priority: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    static: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class RecurringExecution(Base):
    """Ledger of fired recurring ticks, unique per (task_key, run_at)."""

    __tablename__ = "recurring_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    task_key: Mapped[str] = mapped_column(String(255), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("task_key", "run_at", name="uq_recurring_executions_task_key_run_at"),
    )


class Pause(Base):
    """A paused queue."""

    __tablename__ = "pauses"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
