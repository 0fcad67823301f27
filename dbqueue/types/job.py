"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from dbqueue.constants import (
    ConcurrencyConflict,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE_NAME,
)


class JobSpec(BaseModel):
    """
    Description of a job to enqueue.

    Concurrency fields left unset are filled from the handler registry's
    ConcurrencyControls for the job type, if any.
    """

    job_type: str
    arguments: list[Any] = Field(default_factory=list)
    queue_name: str = DEFAULT_QUEUE_NAME
    priority: int = DEFAULT_PRIORITY
    scheduled_at: datetime | None = None

    concurrency_key: str | None = None
    concurrency_limit: int | None = Field(default=None, ge=0)
    concurrency_duration: int | None = Field(default=None, gt=0)
    concurrency_on_conflict: ConcurrencyConflict = ConcurrencyConflict.BLOCK


class EnqueueContext(BaseModel):
    """
    Call-scoped context passed through enqueue and dispatch calls.
    """

    recurring_task_key: str | None = None


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by execute_job after running a handler.
    """

    success: bool
    output: Any = None
    error: dict[str, Any] | None = None
    duration_ms: float | None = None


@dataclass
class ClaimedJob:
    """
    A job handed to a process by the claim protocol.
    Plain values, safe to pass to pool threads.
    """

    job_id: int
    job_type: str
    queue_name: str
    priority: int
    arguments: bytes | None
    process_id: int | None
    concurrency_key: str | None = None
    concurrency_limit: int | None = None
    concurrency_duration: int | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    """

    job_id: int
    job_type: str
    queue_name: str
    priority: int
    arguments: list[Any]
