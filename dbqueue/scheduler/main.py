"""
Scheduler process.

Persists the configured recurring tasks at boot, arms a timer per task
and periodically reloads the task list so tasks added or removed at
runtime are picked up.
"""

import logging
from typing import Any

from dbqueue.config import get_settings
from dbqueue.constants import ProcessKind
from dbqueue.db.connection import get_session_context
from dbqueue.db.recurring import RecurringTaskRepository
from dbqueue.errors import InvalidScheduleError
from dbqueue.processes.base import Poller
from dbqueue.scheduler.recurring import RecurringSchedule
from dbqueue.scheduler.task import RecurringTaskDefinition
from dbqueue.types.process import RecurringTaskOptions, SchedulerOptions

logger = logging.getLogger(__name__)


class Scheduler(Poller):
    """
    Recurring task scheduler.
    """

    kind = ProcessKind.SCHEDULER

    def __init__(
        self,
        options: SchedulerOptions | None = None,
        recurring_tasks: dict[str, RecurringTaskOptions] | None = None,
        **kwargs: Any,
    ):
        options = options or SchedulerOptions()
        super().__init__(polling_interval=options.polling_interval, **kwargs)

        if recurring_tasks is None:
            recurring_tasks = get_settings().recurring_tasks
        self.static_tasks = recurring_tasks
        self.recurring_schedule = RecurringSchedule(on_error=self.on_error)

    @property
    def metadata(self) -> dict[str, Any]:
        return {"recurring_schedule": sorted(self.static_tasks) or None}

    async def on_boot(self) -> None:
        async with get_session_context() as session:
            await RecurringTaskRepository(session).persist_static(self.static_tasks)
        await self.reload()

    async def poll(self) -> float:
        await self.reload()
        return self.polling_interval

    async def reload(self) -> list[RecurringTaskDefinition]:
        """
        Load every recurring task and re-arm the schedule to match.

        Tasks whose stored schedule no longer parses are skipped.
        """
        async with get_session_context() as session:
            rows = await RecurringTaskRepository(session).all()

        tasks = []
        for row in rows:
            try:
                tasks.append(RecurringTaskDefinition.from_row(row))
            except InvalidScheduleError as e:
                logger.error(
                    "Skipping recurring task with invalid schedule",
                    extra={"task_key": row.key, "schedule": row.schedule, "error": str(e)},
                )

        self.recurring_schedule.schedule(tasks)
        return tasks

    async def on_shutdown(self) -> None:
        await self.recurring_schedule.unschedule()
