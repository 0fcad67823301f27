"""
In-process timers for recurring tasks.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from dbqueue import client
from dbqueue.processes.timer import cancel_timers, run_at
from dbqueue.scheduler.task import RecurringTaskDefinition
from dbqueue.utils import utcnow

logger = logging.getLogger(__name__)


class RecurringSchedule:
    """
    One one-shot timer per recurring task.

    When a timer fires it arms the next occurrence first, then enqueues
    the job for the tick it was armed for. Several schedulers may arm
    the same tick; the execution ledger lets only one of them enqueue.
    """

    def __init__(
        self,
        on_error: Callable[[BaseException], None],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._on_error = on_error
        self._clock = clock
        self._tasks: dict[str, RecurringTaskDefinition] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._next_run: dict[str, datetime] = {}

    @property
    def task_keys(self) -> list[str]:
        return sorted(self._tasks)

    def next_run_at(self, key: str) -> datetime | None:
        return self._next_run.get(key)

    def schedule(self, tasks: Iterable[RecurringTaskDefinition]) -> None:
        """
        Make the armed timers match the given tasks.

        New tasks are armed, removed ones disarmed, and tasks whose schedule
        or job changed are re-armed.
        """
        wanted = {task.key: task for task in tasks}

        for key in list(self._tasks):
            if key not in wanted:
                self._disarm(key)
                logger.info("Unscheduled recurring task", extra={"task_key": key})

        for key, task in wanted.items():
            current = self._tasks.get(key)
            if current is not None and _same_task(current, task):
                continue
            self._disarm(key)
            self._tasks[key] = task
            self._arm(task)
            logger.info(
                "Scheduled recurring task",
                extra={
                    "task_key": key,
                    "schedule": task.schedule.source,
                    "next_run_at": self._next_run[key].isoformat(),
                },
            )

    async def unschedule(self) -> None:
        """Cancel every timer."""
        timers = list(self._timers.values())
        self._timers.clear()
        self._tasks.clear()
        self._next_run.clear()
        await cancel_timers(timers)

    def _arm(self, task: RecurringTaskDefinition, after: datetime | None = None) -> None:
        fire_at = task.next_time(after or self._clock())
        self._next_run[task.key] = fire_at
        delay = (fire_at - self._clock()).total_seconds()
        self._timers[task.key] = run_at(
            delay,
            lambda: self._fire(task, fire_at),
            self._on_error,
            name=f"recurring-{task.key}",
        )

    def _disarm(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._tasks.pop(key, None)
        self._next_run.pop(key, None)

    async def _fire(self, task: RecurringTaskDefinition, fire_at: datetime) -> None:
        if self._tasks.get(task.key) is task:
            self._arm(task, after=fire_at)
        await client.fire_recurring(task, fire_at)


def _same_task(a: RecurringTaskDefinition, b: RecurringTaskDefinition) -> bool:
    return (
        a.schedule.expression == b.schedule.expression
        and a.job_type == b.job_type
        and a.arguments == b.arguments
        and a.queue_name == b.queue_name
        and a.priority == b.priority
    )
