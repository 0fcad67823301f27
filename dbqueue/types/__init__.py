"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from dbqueue.types.job import (
    ClaimedJob,
    EnqueueContext,
    JobContext,
    JobResult,
    JobSpec,
)
from dbqueue.types.process import (
    DispatcherOptions,
    RecurringTaskOptions,
    SchedulerOptions,
    WorkerOptions,
)

__all__ = [
    # Job types
    "JobSpec",
    "EnqueueContext",
    "JobResult",
    "ClaimedJob",
    "JobContext",
    # Process options
    "WorkerOptions",
    "DispatcherOptions",
    "SchedulerOptions",
    "RecurringTaskOptions",
]
