"""
Claim protocol and claimed-execution lifecycle.

Claims move ready executions to claimed executions inside one
transaction, selecting with FOR UPDATE SKIP LOCKED so concurrent claimers
receive disjoint sets of jobs.
"""

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.db.concurrency import release_concurrency_slot
from dbqueue.db.dialect import insert
from dbqueue.db.models import (
    ClaimedExecution,
    FailedExecution,
    Job,
    Process,
    ReadyExecution,
)
from dbqueue.db.repository import JobRepository
from dbqueue.errors import error_payload
from dbqueue.types.job import ClaimedJob
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)


class ClaimRepository:
    """
    Repository for claiming jobs and completing claimed executions.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._jobs = JobRepository(session)

    async def claim(
        self,
        queue_name: str | None,
        limit: int,
        process_id: int | None,
    ) -> list[ClaimedJob]:
        """
        Claim up to limit ready jobs from one queue scope.

        This is the critical path for job distribution. Rows locked by
        other transactions are skipped, never waited on.

        Args:
            queue_name: Queue to claim from, or None for every queue.
            limit: Maximum number of jobs to claim.
            process_id: The claiming process.

        Returns:
            Claimed jobs ordered by (priority, job_id).
        """
        if limit <= 0:
            return []

        stmt = select(ReadyExecution.job_id)
        if queue_name is not None:
            stmt = stmt.where(ReadyExecution.queue_name == queue_name)
        stmt = (
            stmt.order_by(ReadyExecution.priority, ReadyExecution.job_id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        job_ids = list((await self._session.scalars(stmt)).all())
        if not job_ids:
            return []

        now = utcnow()
        await self._session.execute(
            insert(self._session, ClaimedExecution).values(
                [
                    {"job_id": job_id, "process_id": process_id, "created_at": now}
                    for job_id in job_ids
                ]
            )
        )
        await self._session.execute(
            delete(ReadyExecution)
            .where(ReadyExecution.job_id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )

        jobs = (
            await self._session.scalars(
                select(Job).where(Job.id.in_(job_ids)).order_by(Job.priority, Job.id)
            )
        ).all()

        logger.info(
            f"Claimed {len(jobs)} jobs",
            extra={"process_id": process_id, "queue_name": queue_name, "job_count": len(jobs)},
        )
        return [
            ClaimedJob(
                job_id=job.id,
                job_type=job.job_type,
                queue_name=job.queue_name,
                priority=job.priority,
                arguments=job.arguments,
                process_id=process_id,
                concurrency_key=job.concurrency_key,
                concurrency_limit=job.concurrency_limit,
                concurrency_duration=job.concurrency_duration,
            )
            for job in jobs
        ]

    async def get(self, job_id: int) -> ClaimedExecution | None:
        return await self._session.scalar(
            select(ClaimedExecution).where(ClaimedExecution.job_id == job_id)
        )

    async def claimed_by(self, process_id: int) -> Sequence[ClaimedExecution]:
        result = await self._session.scalars(
            select(ClaimedExecution)
            .where(ClaimedExecution.process_id == process_id)
            .order_by(ClaimedExecution.job_id)
        )
        return result.all()

    async def finish(self, job_id: int) -> Job | None:
        """
        Complete a claimed job successfully.

        Args:
            job_id: The job ID.

        Returns:
            The finished Job, or None if it was no longer claimed.
        """
        job = await self._end_claim(job_id)
        if job is None:
            return None

        await self._jobs.finish(job)
        await release_concurrency_slot(self._session, job)
        return job

    async def fail(self, job_id: int, error: BaseException | dict[str, Any]) -> Job | None:
        """
        Record a failed execution for a claimed job.

        Args:
            job_id: The job ID.
            error: The exception, or an already serialized error payload.

        Returns:
            The failed Job, or None if it was no longer claimed.
        """
        job = await self._end_claim(job_id)
        if job is None:
            return None

        payload = error if isinstance(error, dict) else error_payload(error)
        await self._session.execute(
            insert(self._session, FailedExecution)
            .values(job_id=job_id, error=payload, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["job_id"])
        )
        await release_concurrency_slot(self._session, job)

        logger.warning(
            "Job failed",
            extra={"job_id": job_id, "exception_class": payload.get("exception_class")},
        )
        return job

    async def release(self, job_id: int) -> Job | None:
        """
        Put a claimed job back to ready.

        The job keeps the concurrency slot it already holds.

        Args:
            job_id: The job ID.

        Returns:
            The released Job, or None if it was no longer claimed.
        """
        job = await self._end_claim(job_id)
        if job is None:
            return None

        await self._session.execute(
            insert(self._session, ReadyExecution)
            .values(**self._jobs.ready_row(job))
            .on_conflict_do_nothing(index_elements=["job_id"])
        )
        logger.info("Released claimed job", extra={"job_id": job_id})
        return job

    async def fail_all_claimed_by(
        self,
        process_id: int,
        error: BaseException,
    ) -> int:
        """
        Fail every execution claimed by a process.

        Args:
            process_id: The process ID.
            error: The synthetic cause recorded on each failure.

        Returns:
            Number of executions failed.
        """
        claims = await self.claimed_by(process_id)
        payload = error_payload(error)
        for claim in claims:
            await self.fail(claim.job_id, payload)

        if claims:
            logger.warning(
                f"Failed {len(claims)} claimed executions",
                extra={"process_id": process_id, "error": str(error)},
            )
        return len(claims)

    async def fail_orphaned(self, error: BaseException) -> int:
        """
        Fail claims whose process row no longer exists.

        Args:
            error: The synthetic cause recorded on each failure.

        Returns:
            Number of executions failed.
        """
        orphaned = (
            await self._session.scalars(
                select(ClaimedExecution.job_id)
                .outerjoin(Process, Process.id == ClaimedExecution.process_id)
                .where(Process.id.is_(None))
                .order_by(ClaimedExecution.job_id)
                .with_for_update(of=ClaimedExecution, skip_locked=True)
            )
        ).all()

        payload = error_payload(error)
        for job_id in orphaned:
            await self.fail(job_id, payload)

        if orphaned:
            logger.warning(
                f"Failed {len(orphaned)} orphaned executions",
                extra={"count": len(orphaned)},
            )
        return len(orphaned)

    async def _end_claim(self, job_id: int) -> Job | None:
        result = await self._session.execute(
            delete(ClaimedExecution)
            .where(ClaimedExecution.job_id == job_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await self._jobs.get_job(job_id)
