"""
Job repository for database operations.
Implements enqueue routing, concurrency admission and the job lifecycle.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.codec import get_codec
from dbqueue.config import get_settings
from dbqueue.constants import (
    ConcurrencyConflict,
    DEFAULT_CLEAR_BATCH_SIZE,
    ExecutionState,
)
from dbqueue.db.concurrency import (
    SemaphoreRepository,
    concurrency_duration,
    release_concurrency_slot,
)
from dbqueue.db.dialect import insert
from dbqueue.db.models import (
    BlockedExecution,
    ClaimedExecution,
    FailedExecution,
    Job,
    ReadyExecution,
    ScheduledExecution,
)
from dbqueue.errors import UndiscardableError
from dbqueue.types.job import EnqueueContext, JobSpec
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)

# Where each waiting or runnable state lives
EXECUTION_TABLES: dict[ExecutionState, Any] = {
    ExecutionState.SCHEDULED: ScheduledExecution,
    ExecutionState.BLOCKED: BlockedExecution,
    ExecutionState.READY: ReadyExecution,
    ExecutionState.CLAIMED: ClaimedExecution,
    ExecutionState.FAILED: FailedExecution,
}


class JobRepository:
    """
    Repository for job database operations.

    Implements:
    - Enqueue with routing to scheduled, ready or blocked
    - Concurrency admission through semaphores
    - Finishing according to the retention setting
    - Retry, discard and state lookup
    - Clearing old finished jobs
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._settings = get_settings()

    async def enqueue(
        self,
        spec: JobSpec,
        context: EnqueueContext | None = None,
    ) -> tuple[Job, ExecutionState]:
        """
        Create a job and route it to its first state.

        Args:
            spec: The job to create.
            context: Call-scoped enqueue context.

        Returns:
            Tuple of (Job, state) where state is where the job landed.
        """
        now = utcnow()
        job = Job(
            queue_name=spec.queue_name,
            job_type=spec.job_type,
            arguments=get_codec().dump(spec.arguments),
            priority=spec.priority,
            scheduled_at=spec.scheduled_at or now,
            concurrency_key=spec.concurrency_key,
            concurrency_limit=spec.concurrency_limit,
            concurrency_duration=spec.concurrency_duration,
            concurrency_on_conflict=spec.concurrency_on_conflict.value,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        state = await self.dispatch(job)

        logger.info(
            "Enqueued job",
            extra={
                "job_id": job.id,
                "job_type": job.job_type,
                "queue_name": job.queue_name,
                "state": state.value,
                "recurring_task_key": context.recurring_task_key if context else None,
            },
        )
        return job, state

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job ID.

        Returns:
            The Job or None if not found.
        """
        return await self._session.get(Job, job_id)

    async def dispatch(self, job: Job) -> ExecutionState:
        """
        Route a job to scheduled, ready, blocked or finished.

        Args:
            job: A job with no execution row.

        Returns:
            The state the job was routed to.
        """
        if not job.is_due(utcnow()):
            await self._session.execute(
                insert(self._session, ScheduledExecution)
                .values(**self.scheduled_row(job))
                .on_conflict_do_nothing(index_elements=["job_id"])
            )
            return ExecutionState.SCHEDULED

        state = await self.admit(job)
        if state == ExecutionState.READY:
            await self._session.execute(
                insert(self._session, ReadyExecution)
                .values(**self.ready_row(job))
                .on_conflict_do_nothing(index_elements=["job_id"])
            )
        elif state == ExecutionState.BLOCKED:
            await self._session.execute(
                insert(self._session, BlockedExecution)
                .values(**self.blocked_row(job))
                .on_conflict_do_nothing(index_elements=["job_id"])
            )
        return state

    async def admit(self, job: Job) -> ExecutionState:
        """
        Run concurrency admission for a due job.

        Takes a semaphore slot for concurrency-limited jobs. Without a slot
        the job is blocked, or finished immediately under the discard policy.
        Inserts no execution rows for ready or blocked results.

        Args:
            job: The job to admit.

        Returns:
            READY, BLOCKED or FINISHED.
        """
        if not job.concurrency_limited:
            return ExecutionState.READY

        acquired = await SemaphoreRepository(self._session).wait(
            job.concurrency_key, job.concurrency_limit, concurrency_duration(job)
        )
        if acquired:
            return ExecutionState.READY

        if job.concurrency_on_conflict == ConcurrencyConflict.DISCARD:
            await self._mark_finished(job)
            logger.info(
                "Discarded job on concurrency conflict",
                extra={"job_id": job.id, "concurrency_key": job.concurrency_key},
            )
            return ExecutionState.FINISHED

        logger.info(
            "Blocked job on concurrency key",
            extra={"job_id": job.id, "concurrency_key": job.concurrency_key},
        )
        return ExecutionState.BLOCKED

    def ready_row(self, job: Job) -> dict[str, Any]:
        return {
            "job_id": job.id,
            "queue_name": job.queue_name,
            "priority": job.priority,
            "created_at": utcnow(),
        }

    def blocked_row(self, job: Job) -> dict[str, Any]:
        return {
            "job_id": job.id,
            "queue_name": job.queue_name,
            "priority": job.priority,
            "concurrency_key": job.concurrency_key,
            "expires_at": utcnow() + timedelta(seconds=concurrency_duration(job)),
            "created_at": utcnow(),
        }

    def scheduled_row(self, job: Job) -> dict[str, Any]:
        return {
            "job_id": job.id,
            "queue_name": job.queue_name,
            "priority": job.priority,
            "scheduled_at": job.scheduled_at,
            "created_at": utcnow(),
        }

    async def finish(self, job: Job) -> None:
        """
        Mark a job finished, or delete it when finished jobs are not kept.

        Args:
            job: The job that completed successfully.
        """
        if self._settings.preserve_finished_jobs:
            await self._mark_finished(job)
        else:
            await self._session.execute(
                delete(Job)
                .where(Job.id == job.id)
                .execution_options(synchronize_session=False)
            )

    async def _mark_finished(self, job: Job) -> None:
        now = utcnow()
        await self._session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(finished_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        job.finished_at = now

    async def retry(self, job_id: int) -> ExecutionState | None:
        """
        Move a failed job back through dispatch.

        Args:
            job_id: The job ID.

        Returns:
            The new state, or None if the job has no failed execution.
        """
        result = await self._session.execute(
            delete(FailedExecution)
            .where(FailedExecution.job_id == job_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        job = await self.get_job(job_id)
        if job is None:
            return None

        state = await self.dispatch(job)
        logger.info("Retried job", extra={"job_id": job_id, "state": state.value})
        return state

    async def discard(self, job_id: int) -> bool:
        """
        Delete a job that is not in progress.

        A ready job gives its concurrency slot back.

        Args:
            job_id: The job ID.

        Returns:
            True if the job was deleted.

        Raises:
            UndiscardableError: If the job is claimed.
        """
        job = await self.get_job(job_id)
        if job is None:
            return False

        state = await self.get_state(job_id)
        if state == ExecutionState.CLAIMED:
            raise UndiscardableError(job_id)

        await self._session.execute(
            delete(Job)
            .where(Job.id == job_id)
            .execution_options(synchronize_session=False)
        )
        if state == ExecutionState.READY:
            await release_concurrency_slot(self._session, job)

        logger.info("Discarded job", extra={"job_id": job_id})
        return True

    async def get_state(self, job_id: int) -> ExecutionState | None:
        """
        Current state of a job.

        Args:
            job_id: The job ID.

        Returns:
            The job's ExecutionState, or None if the job does not exist.
        """
        row = (
            await self._session.execute(
                select(Job.id, Job.finished_at).where(Job.id == job_id)
            )
        ).first()
        if row is None:
            return None
        if row.finished_at is not None:
            return ExecutionState.FINISHED

        for state, model in EXECUTION_TABLES.items():
            found = await self._session.scalar(
                select(model.id).where(model.job_id == job_id)
            )
            if found is not None:
                return state

        # A job row with no execution row only exists transiently
        return None

    async def clear_finished(
        self,
        batch_size: int = DEFAULT_CLEAR_BATCH_SIZE,
        finished_before: datetime | None = None,
    ) -> int:
        """
        Delete finished jobs older than the retention window, in batches.

        Recurring executions of deleted jobs go with them.

        Args:
            batch_size: Rows deleted per statement.
            finished_before: Cutoff. Defaults to now minus the configured
                retention period.

        Returns:
            Number of jobs deleted.
        """
        if finished_before is None:
            finished_before = utcnow() - timedelta(
                seconds=self._settings.clear_finished_jobs_after_seconds
            )

        total = 0
        while True:
            ids = (
                await self._session.scalars(
                    select(Job.id)
                    .where(Job.finished_at.is_not(None), Job.finished_at < finished_before)
                    .order_by(Job.id)
                    .limit(batch_size)
                )
            ).all()
            if not ids:
                break

            await self._session.execute(
                delete(Job)
                .where(Job.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            total += len(ids)
            if len(ids) < batch_size:
                break

        if total > 0:
            logger.info(f"Cleared {total} finished jobs", extra={"count": total})
        return total
