"""
Scheduled execution promotion.
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.constants import ExecutionState
from dbqueue.db.dialect import insert
from dbqueue.db.models import (
    BlockedExecution,
    Job,
    ReadyExecution,
    ScheduledExecution,
)
from dbqueue.db.queues import QueueSelector
from dbqueue.db.repository import JobRepository
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)


class ScheduledExecutionRepository:
    """
    Repository for scheduled executions.

    Promotion is idempotent: the unique job_id on every execution table
    keeps overlapping batches from promoting a job twice.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._jobs = JobRepository(session)

    async def dispatch_next_batch(self, batch_size: int) -> int:
        """
        Promote due scheduled jobs to ready or blocked.

        Jobs in paused queues stay scheduled until the queue resumes.

        Args:
            batch_size: Maximum number of jobs promoted.

        Returns:
            Number of scheduled executions consumed.
        """
        scopes = await QueueSelector(None, self._session, source=ScheduledExecution).scoped_queues()
        if not scopes:
            return 0

        stmt = select(ScheduledExecution).where(ScheduledExecution.scheduled_at <= utcnow())
        if scopes != [None]:
            stmt = stmt.where(ScheduledExecution.queue_name.in_(scopes))
        stmt = (
            stmt.order_by(
                ScheduledExecution.scheduled_at,
                ScheduledExecution.priority,
                ScheduledExecution.job_id,
            )
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        executions = (await self._session.scalars(stmt)).all()
        if not executions:
            return 0

        job_ids = [execution.job_id for execution in executions]
        jobs = {
            job.id: job
            for job in (
                await self._session.scalars(select(Job).where(Job.id.in_(job_ids)))
            ).all()
        }

        ready_rows = []
        blocked_rows = []
        for job_id in job_ids:
            job = jobs.get(job_id)
            if job is None:
                continue
            state = await self._jobs.admit(job)
            if state == ExecutionState.READY:
                ready_rows.append(self._jobs.ready_row(job))
            elif state == ExecutionState.BLOCKED:
                blocked_rows.append(self._jobs.blocked_row(job))

        if ready_rows:
            await self._session.execute(
                insert(self._session, ReadyExecution)
                .values(ready_rows)
                .on_conflict_do_nothing(index_elements=["job_id"])
            )
        if blocked_rows:
            await self._session.execute(
                insert(self._session, BlockedExecution)
                .values(blocked_rows)
                .on_conflict_do_nothing(index_elements=["job_id"])
            )

        await self._session.execute(
            delete(ScheduledExecution)
            .where(ScheduledExecution.id.in_([execution.id for execution in executions]))
            .execution_options(synchronize_session=False)
        )

        logger.info(
            f"Dispatched {len(executions)} scheduled jobs",
            extra={
                "count": len(executions),
                "ready": len(ready_rows),
                "blocked": len(blocked_rows),
            },
        )
        return len(executions)
