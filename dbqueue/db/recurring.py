"""
Recurring task definitions and the execution ledger.
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dbqueue.codec import get_codec
from dbqueue.db.dialect import insert
from dbqueue.db.models import RecurringExecution, RecurringTask
from dbqueue.errors import AlreadyRecordedError
from dbqueue.types.process import RecurringTaskOptions
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)


class RecurringTaskRepository:
    """
    Repository for recurring tasks and their executions.

    The ledger's unique (task_key, run_at) index is what keeps several
    schedulers from firing the same tick twice.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def persist_static(self, tasks: dict[str, RecurringTaskOptions]) -> None:
        """
        Upsert configured tasks and delete static tasks no longer configured.

        Args:
            tasks: Task options keyed by task key.
        """
        codec = get_codec()
        now = utcnow()
        for key, options in tasks.items():
            values = {
                "schedule": options.schedule,
                "job_type": options.job_type,
                "arguments": codec.dump(options.args),
                "queue_name": options.queue,
                "priority": options.priority,
                "description": options.description,
                "static": True,
                "updated_at": now,
            }
            stmt = insert(self._session, RecurringTask).values(
                key=key, created_at=now, **values
            )
            stmt = stmt.on_conflict_do_update(index_elements=["key"], set_=values)
            await self._session.execute(stmt)

        stale = delete(RecurringTask).where(RecurringTask.static.is_(True))
        if tasks:
            stale = stale.where(RecurringTask.key.not_in(list(tasks)))
        result = await self._session.execute(
            stale.execution_options(synchronize_session=False)
        )

        logger.info(
            "Persisted static recurring tasks",
            extra={"count": len(tasks), "removed": result.rowcount},
        )

    async def all(self) -> Sequence[RecurringTask]:
        result = await self._session.scalars(select(RecurringTask).order_by(RecurringTask.key))
        return result.all()

    async def get(self, key: str) -> RecurringTask | None:
        return await self._session.scalar(select(RecurringTask).where(RecurringTask.key == key))

    async def record_execution(self, task_key: str, run_at: datetime, job_id: int) -> None:
        """
        Record that a tick fired.

        Args:
            task_key: The recurring task key.
            run_at: The tick time.
            job_id: The job created for the tick.

        Raises:
            AlreadyRecordedError: If the tick was already recorded.
        """
        stmt = (
            insert(self._session, RecurringExecution)
            .values(task_key=task_key, run_at=run_at, job_id=job_id, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["task_key", "run_at"])
            .returning(RecurringExecution.id)
        )
        result = await self._session.execute(stmt)
        if result.scalar_one_or_none() is None:
            raise AlreadyRecordedError(task_key, run_at)
