"""
Process configuration type definitions.
"""

from typing import Any

from pydantic import BaseModel, Field

from dbqueue.constants import (
    ALL_QUEUES,
    DEFAULT_CONCURRENCY_MAINTENANCE_INTERVAL_SECONDS,
    DEFAULT_DISPATCH_BATCH_SIZE,
    DEFAULT_DISPATCHER_POLLING_INTERVAL_SECONDS,
    DEFAULT_POLLING_INTERVAL_SECONDS,
    DEFAULT_WORKER_THREADS,
)


class WorkerOptions(BaseModel):
    """Options for a group of identical worker processes."""

    queues: list[str] = Field(default_factory=lambda: [ALL_QUEUES])
    threads: int = Field(default=DEFAULT_WORKER_THREADS, ge=1)
    processes: int = Field(default=1, ge=1)
    polling_interval: float = Field(default=DEFAULT_POLLING_INTERVAL_SECONDS, gt=0)


class DispatcherOptions(BaseModel):
    """Options for a dispatcher process."""

    polling_interval: float = Field(
        default=DEFAULT_DISPATCHER_POLLING_INTERVAL_SECONDS, gt=0
    )
    batch_size: int = Field(default=DEFAULT_DISPATCH_BATCH_SIZE, ge=1)
    concurrency_maintenance: bool = True
    concurrency_maintenance_interval: float = Field(
        default=DEFAULT_CONCURRENCY_MAINTENANCE_INTERVAL_SECONDS, gt=0
    )


class SchedulerOptions(BaseModel):
    """Options for the recurring task scheduler process."""

    polling_interval: float = Field(default=1.0, gt=0)


class RecurringTaskOptions(BaseModel):
    """A recurring task as declared in configuration."""

    schedule: str
    job_type: str
    args: list[Any] = Field(default_factory=list)
    queue: str | None = None
    priority: int | None = None
    description: str | None = None
