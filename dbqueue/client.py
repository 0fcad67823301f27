"""
Programmatic entry points.

Each function runs in its own transaction through get_session_context().
Claims run one transaction per queue scope, so a slow queue never holds
locks taken on another.
"""

import logging
from datetime import datetime, timezone

from dbqueue.constants import (
    SPAN_CLAIM_JOBS,
    SPAN_ENQUEUE_JOB,
    SPAN_FIRE_RECURRING,
    ExecutionState,
)
from dbqueue.db.claims import ClaimRepository
from dbqueue.db.concurrency import SemaphoreRepository
from dbqueue.db.connection import get_session_context
from dbqueue.db.models import Job
from dbqueue.db.queues import QueueRepository, QueueSelector
from dbqueue.db.recurring import RecurringTaskRepository
from dbqueue.db.repository import JobRepository
from dbqueue.errors import AlreadyRecordedError
from dbqueue.observability.metrics import get_metrics
from dbqueue.observability.tracing import get_tracer
from dbqueue.scheduler.task import RecurringTaskDefinition
from dbqueue.types.job import ClaimedJob, EnqueueContext, JobSpec
from dbqueue.worker.handlers import apply_concurrency_controls

logger = logging.getLogger(__name__)


def as_utc(at: datetime) -> datetime:
    """Normalize a datetime to naive UTC."""
    if at.tzinfo is None:
        return at
    return at.astimezone(timezone.utc).replace(tzinfo=None)


async def enqueue(job: JobSpec, context: EnqueueContext | None = None) -> Job:
    """
    Enqueue a job.

    The job lands in scheduled, ready or blocked, or is finished at once
    when its concurrency key is full and its conflict policy is discard.

    Args:
        job: The job to enqueue.
        context: Call-scoped enqueue context.

    Returns:
        The created Job.
    """
    spec = apply_concurrency_controls(job)
    if spec.scheduled_at is not None:
        spec = spec.model_copy(update={"scheduled_at": as_utc(spec.scheduled_at)})

    with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
        span.set_attribute("job_type", spec.job_type)
        span.set_attribute("queue_name", spec.queue_name)

        async with get_session_context() as session:
            created, state = await JobRepository(session).enqueue(spec, context)

    get_metrics().record_job_enqueued(created.queue_name, state.value)
    return created


async def enqueue_at(job: JobSpec, at: datetime, context: EnqueueContext | None = None) -> Job:
    """
    Enqueue a job to run at a given time.

    Args:
        job: The job to enqueue.
        at: When the job becomes due.
        context: Call-scoped enqueue context.

    Returns:
        The created Job.
    """
    return await enqueue(job.model_copy(update={"scheduled_at": at}), context)


async def claim(
    queues: list[str] | None,
    count: int,
    process_id: int | None,
) -> list[ClaimedJob]:
    """
    Claim up to count ready jobs for a process.

    Queue scopes are resolved by the QueueSelector and visited in order,
    consuming count cumulatively.

    Args:
        queues: Queue patterns. None means all queues.
        count: Maximum number of jobs to claim.
        process_id: The claiming process.

    Returns:
        The claimed jobs.
    """
    if count <= 0:
        return []

    with get_tracer().start_as_current_span(SPAN_CLAIM_JOBS) as span:
        span.set_attribute("count", count)

        async with get_session_context() as session:
            scopes = await QueueSelector(queues, session).scoped_queues()

        claimed: list[ClaimedJob] = []
        for queue_name in scopes:
            remaining = count - len(claimed)
            if remaining <= 0:
                break
            async with get_session_context() as session:
                claimed.extend(
                    await ClaimRepository(session).claim(queue_name, remaining, process_id)
                )

        span.set_attribute("claimed", len(claimed))
    return claimed


async def wait(concurrency_key: str, limit: int, duration: float) -> bool:
    """Take a concurrency slot. Returns False when none is free."""
    async with get_session_context() as session:
        return await SemaphoreRepository(session).wait(concurrency_key, limit, duration)


async def signal(concurrency_key: str, limit: int, duration: float) -> bool:
    """Give a concurrency slot back. Returns False when already at limit."""
    async with get_session_context() as session:
        return await SemaphoreRepository(session).signal(concurrency_key, limit, duration)


async def fire_recurring(task: RecurringTaskDefinition, at: datetime) -> Job | None:
    """
    Enqueue a recurring task's job for one tick, at most once.

    The job and its ledger row are written in one transaction. If another
    scheduler already recorded the tick, the transaction rolls back.

    Args:
        task: The recurring task.
        at: The tick time.

    Returns:
        The created Job, or None if the tick was already fired.
    """
    run_at = as_utc(at)
    metrics = get_metrics()

    with get_tracer().start_as_current_span(SPAN_FIRE_RECURRING) as span:
        span.set_attribute("task_key", task.key)
        span.set_attribute("run_at", run_at.isoformat())

        try:
            async with get_session_context() as session:
                job, state = await JobRepository(session).enqueue(
                    apply_concurrency_controls(task.job_spec()),
                    EnqueueContext(recurring_task_key=task.key),
                )
                await RecurringTaskRepository(session).record_execution(
                    task.key, run_at, job.id
                )
        except AlreadyRecordedError:
            logger.info(
                "Skipped recurring task, already dispatched",
                extra={"task_key": task.key, "run_at": run_at.isoformat()},
            )
            metrics.record_recurring(task.key, "skipped")
            return None

    logger.info(
        "Enqueued recurring task",
        extra={"task_key": task.key, "run_at": run_at.isoformat(), "job_id": job.id},
    )
    metrics.record_recurring(task.key, "enqueued")
    metrics.record_job_enqueued(job.queue_name, state.value)
    return job


async def retry(job_id: int) -> ExecutionState | None:
    """Retry a failed job. Returns its new state, or None if it had not failed."""
    async with get_session_context() as session:
        return await JobRepository(session).retry(job_id)


async def discard(job_id: int) -> bool:
    """Delete a job that is not in progress."""
    async with get_session_context() as session:
        return await JobRepository(session).discard(job_id)


async def job_state(job_id: int) -> ExecutionState | None:
    async with get_session_context() as session:
        return await JobRepository(session).get_state(job_id)


async def pause(queue_name: str) -> bool:
    async with get_session_context() as session:
        return await QueueRepository(session).pause(queue_name)


async def resume(queue_name: str) -> bool:
    async with get_session_context() as session:
        return await QueueRepository(session).resume(queue_name)


async def clear_finished_jobs(
    batch_size: int | None = None,
    finished_before: datetime | None = None,
) -> int:
    """Delete finished jobs older than the retention window."""
    async with get_session_context() as session:
        repo = JobRepository(session)
        if batch_size is None:
            return await repo.clear_finished(finished_before=finished_before)
        return await repo.clear_finished(batch_size, finished_before)
