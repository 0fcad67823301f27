"""
Queue selection and administration.
"""

import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.constants import ALL_QUEUES, DEFAULT_CLEAR_BATCH_SIZE
from dbqueue.db.concurrency import release_concurrency_slot
from dbqueue.db.dialect import insert
from dbqueue.db.models import Job, Pause, ReadyExecution
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)


class QueueSelector:
    """
    Resolves raw queue patterns into the queue names to poll.

    Patterns are exact names, trailing-"*" prefixes, or "*" for every
    queue. Paused queues never match, even when named explicitly.

    When every queue is requested and none is paused, scoped_queues()
    returns [None]: a single unfiltered scope that scans all queues in one
    ordered query.
    """

    def __init__(
        self,
        raw_queues: list[str] | None,
        session: AsyncSession,
        source: Any = ReadyExecution,
    ):
        """
        Initialize the selector.

        Args:
            raw_queues: Queue patterns. Empty or None means all queues.
            session: The async database session.
            source: Execution model whose queue names are matched.
        """
        self.raw_queues = [q.strip() for q in (raw_queues or []) if q.strip()] or [
            ALL_QUEUES
        ]
        self._session = session
        self._source = source

    @property
    def all_queues(self) -> bool:
        return ALL_QUEUES in self.raw_queues

    async def scoped_queues(self) -> list[str | None]:
        """
        Queue scopes in polling order.

        Returns:
            Queue names, or [None] for one unfiltered scope.
        """
        paused = await self._paused_queue_names()
        if self.all_queues and not paused:
            return [None]
        return await self.queue_names(paused)

    async def queue_names(self, paused: set[str] | None = None) -> list[str]:
        """
        Concrete queue names matching the patterns, minus paused queues.
        Exact names keep their given order; wildcard matches are sorted.
        """
        if paused is None:
            paused = await self._paused_queue_names()

        existing: list[str] | None = None
        names: list[str] = []
        for pattern in self.raw_queues:
            if pattern == ALL_QUEUES or pattern.endswith("*"):
                if existing is None:
                    existing = await self._existing_queue_names()
                prefix = pattern[:-1]
                names.extend(name for name in existing if name.startswith(prefix))
            else:
                names.append(pattern)

        selected: list[str] = []
        for name in names:
            if name not in paused and name not in selected:
                selected.append(name)
        return selected

    async def _existing_queue_names(self) -> list[str]:
        result = await self._session.scalars(
            select(self._source.queue_name).distinct().order_by(self._source.queue_name)
        )
        return list(result.all())

    async def _paused_queue_names(self) -> set[str]:
        result = await self._session.scalars(select(Pause.queue_name))
        return set(result.all())


class QueueRepository:
    """
    Repository for queue administration: pausing, sizes and clearing.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def pause(self, queue_name: str) -> bool:
        """
        Pause a queue. Pausing an already paused queue is a no-op.

        Returns:
            True if the queue was newly paused.
        """
        stmt = (
            insert(self._session, Pause)
            .values(queue_name=queue_name, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["queue_name"])
            .returning(Pause.id)
        )
        result = await self._session.execute(stmt)
        paused = result.scalar_one_or_none() is not None
        if paused:
            logger.info("Paused queue", extra={"queue_name": queue_name})
        return paused

    async def resume(self, queue_name: str) -> bool:
        """
        Resume a paused queue.

        Returns:
            True if the queue was paused.
        """
        result = await self._session.execute(
            delete(Pause).where(Pause.queue_name == queue_name)
        )
        resumed = result.rowcount > 0
        if resumed:
            logger.info("Resumed queue", extra={"queue_name": queue_name})
        return resumed

    async def paused_queue_names(self) -> list[str]:
        result = await self._session.scalars(
            select(Pause.queue_name).order_by(Pause.queue_name)
        )
        return list(result.all())

    async def is_paused(self, queue_name: str) -> bool:
        return (
            await self._session.scalar(
                select(Pause.id).where(Pause.queue_name == queue_name)
            )
        ) is not None

    async def all_queue_names(self) -> list[str]:
        """All queue names that have at least one job."""
        result = await self._session.scalars(
            select(Job.queue_name).distinct().order_by(Job.queue_name)
        )
        return list(result.all())

    async def size(self, queue_name: str) -> int:
        """Number of ready jobs in the queue."""
        return (
            await self._session.scalar(
                select(func.count())
                .select_from(ReadyExecution)
                .where(ReadyExecution.queue_name == queue_name)
            )
        ) or 0

    async def latency(self, queue_name: str) -> float:
        """
        Age in seconds of the oldest ready job in the queue.

        Returns:
            Seconds, or 0.0 for an empty queue.
        """
        oldest = await self._session.scalar(
            select(func.min(ReadyExecution.created_at)).where(
                ReadyExecution.queue_name == queue_name
            )
        )
        if oldest is None:
            return 0.0
        return max(0.0, (utcnow() - oldest).total_seconds())

    async def clear(self, queue_name: str, batch_size: int = DEFAULT_CLEAR_BATCH_SIZE) -> int:
        """
        Discard every ready job in the queue, in batches.

        Jobs holding a concurrency slot give it back.

        Returns:
            Number of jobs discarded.
        """
        total = 0
        while True:
            jobs = (
                await self._session.scalars(
                    select(Job)
                    .join(ReadyExecution, ReadyExecution.job_id == Job.id)
                    .where(ReadyExecution.queue_name == queue_name)
                    .order_by(ReadyExecution.job_id)
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                )
            ).all()
            if not jobs:
                break

            await self._session.execute(
                delete(Job)
                .where(Job.id.in_([job.id for job in jobs]))
                .execution_options(synchronize_session=False)
            )
            for job in jobs:
                await release_concurrency_slot(self._session, job)

            total += len(jobs)
            if len(jobs) < batch_size:
                break

        logger.info(
            f"Cleared {total} jobs", extra={"queue_name": queue_name, "count": total}
        )
        return total
