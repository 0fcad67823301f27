"""
Concurrency controls backed by semaphore rows.

A semaphore's value counts the free slots for a concurrency key. It is
only ever changed through conditional UPDATEs, so it stays within
[0, limit] under any interleaving of wait and signal calls.
"""

import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.config import get_settings
from dbqueue.db.dialect import insert
from dbqueue.db.models import BlockedExecution, Job, ReadyExecution, Semaphore
from dbqueue.utils import seconds_from_now, utcnow

logger = logging.getLogger(__name__)


def concurrency_duration(job: Job) -> float:
    """Semaphore and block expiry for a job, in seconds."""
    if job.concurrency_duration:
        return job.concurrency_duration
    return get_settings().default_concurrency_duration_seconds


class SemaphoreRepository:
    """
    Repository for semaphore operations.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def wait(self, key: str, limit: int, duration: float) -> bool:
        """
        Try to take a slot for the key.

        Creates the semaphore with limit - 1 free slots the first time a key
        is seen. Losing the creation race falls back to a decrement.

        Args:
            key: The concurrency key.
            limit: Maximum concurrent holders of the key.
            duration: Seconds until the semaphore expires.

        Returns:
            True if a slot was taken, False otherwise.
        """
        exists = await self._session.scalar(
            select(Semaphore.id).where(Semaphore.key == key)
        )
        if exists is not None:
            return await self._attempt_decrement(key, duration)

        stmt = (
            insert(self._session, Semaphore)
            .values(
                key=key,
                value=limit - 1,
                expires_at=seconds_from_now(duration),
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["key"])
            .returning(Semaphore.id)
        )
        result = await self._session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            return True

        return await self._attempt_decrement(key, duration)

    async def signal(self, key: str, limit: int, duration: float) -> bool:
        """
        Give a slot back for the key, never going above limit.

        Args:
            key: The concurrency key.
            limit: Maximum concurrent holders of the key.
            duration: Seconds until the semaphore expires.

        Returns:
            True if the semaphore was incremented.
        """
        stmt = (
            update(Semaphore)
            .where(Semaphore.key == key, Semaphore.value < limit)
            .values(
                value=Semaphore.value + 1,
                expires_at=seconds_from_now(duration),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def _attempt_decrement(self, key: str, duration: float) -> bool:
        stmt = (
            update(Semaphore)
            .where(Semaphore.key == key, Semaphore.value > 0)
            .values(
                value=Semaphore.value - 1,
                expires_at=seconds_from_now(duration),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def get(self, key: str) -> Semaphore | None:
        return await self._session.scalar(select(Semaphore).where(Semaphore.key == key))

    async def expire(self, batch_size: int) -> int:
        """
        Delete expired semaphores in batches.

        Reclaims slots abandoned by processes that never signalled.

        Args:
            batch_size: Rows deleted per statement.

        Returns:
            Number of semaphores deleted.
        """
        total = 0
        while True:
            ids = (
                await self._session.scalars(
                    select(Semaphore.id)
                    .where(Semaphore.expires_at < utcnow())
                    .order_by(Semaphore.id)
                    .limit(batch_size)
                )
            ).all()
            if not ids:
                break

            await self._session.execute(
                delete(Semaphore)
                .where(Semaphore.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            total += len(ids)
            if len(ids) < batch_size:
                break

        if total > 0:
            logger.info(f"Expired {total} semaphores", extra={"count": total})
        return total


class BlockedExecutionRepository:
    """
    Repository for blocked executions.

    Releasing a waiter locks the blocked row with SKIP LOCKED, so
    concurrent releasers never pick the same job.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._semaphores = SemaphoreRepository(session)

    async def release_one(self, concurrency_key: str) -> bool:
        """
        Move the most urgent blocked job for the key to ready.

        Args:
            concurrency_key: The concurrency key.

        Returns:
            True if a job was released.
        """
        blocked = await self._session.scalar(
            select(BlockedExecution)
            .where(BlockedExecution.concurrency_key == concurrency_key)
            .order_by(BlockedExecution.priority, BlockedExecution.job_id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if blocked is None:
            return False

        job = await self._session.get(Job, blocked.job_id)
        if job is None:
            return False

        acquired = await self._semaphores.wait(
            concurrency_key, job.concurrency_limit or 1, concurrency_duration(job)
        )
        if not acquired:
            return False

        await self._session.execute(
            insert(self._session, ReadyExecution)
            .values(
                job_id=job.id,
                queue_name=job.queue_name,
                priority=job.priority,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["job_id"])
        )
        await self._session.execute(
            delete(BlockedExecution)
            .where(BlockedExecution.id == blocked.id)
            .execution_options(synchronize_session=False)
        )

        logger.info(
            "Released blocked job",
            extra={"job_id": job.id, "concurrency_key": concurrency_key},
        )
        return True

    async def releasable_keys(self, batch_size: int) -> list[str]:
        """
        Concurrency keys of expired blocked rows that have a free slot.

        A key qualifies when its semaphore is gone or has value > 0.
        """
        candidates = (
            await self._session.scalars(
                select(BlockedExecution.concurrency_key)
                .where(BlockedExecution.expires_at < utcnow())
                .distinct()
                .order_by(BlockedExecution.concurrency_key)
                .limit(batch_size)
            )
        ).all()
        if not candidates:
            return []

        exhausted = set(
            (
                await self._session.scalars(
                    select(Semaphore.key).where(
                        Semaphore.key.in_(candidates), Semaphore.value <= 0
                    )
                )
            ).all()
        )
        return [key for key in candidates if key not in exhausted]

    async def unblock(self, batch_size: int) -> int:
        """
        Release one waiter per releasable key.

        Args:
            batch_size: Maximum number of keys considered.

        Returns:
            Number of jobs released.
        """
        released = 0
        for key in await self.releasable_keys(batch_size):
            if await self.release_one(key):
                released += 1

        if released > 0:
            logger.info(f"Unblocked {released} jobs", extra={"count": released})
        return released

    async def count_for(self, concurrency_key: str) -> int:
        return await self._session.scalar(
            select(func.count())
            .select_from(BlockedExecution)
            .where(BlockedExecution.concurrency_key == concurrency_key)
        ) or 0


async def release_concurrency_slot(session: AsyncSession, job: Job) -> bool:
    """
    Signal a finished job's semaphore and release the next waiter.

    Called whenever a job holding a slot leaves the claimed or ready
    state: success, failure or discard.

    Args:
        session: The async database session.
        job: The job giving its slot back.

    Returns:
        True if the semaphore was signalled.
    """
    if not job.concurrency_limited:
        return False

    key = job.concurrency_key
    signalled = await SemaphoreRepository(session).signal(
        key, job.concurrency_limit, concurrency_duration(job)
    )
    if signalled:
        await BlockedExecutionRepository(session).release_one(key)
    return signalled
