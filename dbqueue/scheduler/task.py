"""
Recurring task definitions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dbqueue.codec import get_codec
from dbqueue.constants import DEFAULT_PRIORITY, DEFAULT_QUEUE_NAME
from dbqueue.db.models import RecurringTask
from dbqueue.scheduler.cron import CronSchedule
from dbqueue.types.job import JobSpec
from dbqueue.types.process import RecurringTaskOptions


@dataclass
class RecurringTaskDefinition:
    """
    A recurring task with its parsed schedule.
    """

    key: str
    schedule: CronSchedule
    job_type: str
    arguments: list[Any] = field(default_factory=list)
    queue_name: str | None = None
    priority: int | None = None
    description: str | None = None
    static: bool = True

    @classmethod
    def from_options(cls, key: str, options: RecurringTaskOptions) -> "RecurringTaskDefinition":
        return cls(
            key=key,
            schedule=CronSchedule(options.schedule),
            job_type=options.job_type,
            arguments=list(options.args),
            queue_name=options.queue,
            priority=options.priority,
            description=options.description,
        )

    @classmethod
    def from_row(cls, row: RecurringTask) -> "RecurringTaskDefinition":
        return cls(
            key=row.key,
            schedule=CronSchedule(row.schedule),
            job_type=row.job_type,
            arguments=get_codec().load(row.arguments),
            queue_name=row.queue_name,
            priority=row.priority,
            description=row.description,
            static=row.static,
        )

    def next_time(self, after: datetime) -> datetime:
        return self.schedule.next_time(after)

    def previous_time(self, before: datetime) -> datetime:
        return self.schedule.previous_time(before)

    def job_spec(self) -> JobSpec:
        return JobSpec(
            job_type=self.job_type,
            arguments=self.arguments,
            queue_name=self.queue_name or DEFAULT_QUEUE_NAME,
            priority=self.priority if self.priority is not None else DEFAULT_PRIORITY,
        )
