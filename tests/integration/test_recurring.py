"""
Integration tests for recurring tasks.
"""

import asyncio
from datetime import datetime

from sqlalchemy import func, select

from dbqueue import client
from dbqueue.codec import get_codec
from dbqueue.constants import ExecutionState
from dbqueue.db import get_session_context
from dbqueue.db.models import Job, RecurringExecution, RecurringTask
from dbqueue.db.recurring import RecurringTaskRepository
from dbqueue.scheduler.main import Scheduler
from dbqueue.scheduler.recurring import RecurringSchedule
from dbqueue.scheduler.task import RecurringTaskDefinition
from dbqueue.types.process import RecurringTaskOptions
from dbqueue.utils import utcnow


def task(key: str = "cleanup", schedule: str = "every minute", **kwargs) -> RecurringTaskDefinition:
    return RecurringTaskDefinition.from_options(
        key, RecurringTaskOptions(schedule=schedule, job_type="cleanup", **kwargs)
    )


async def count(model) -> int:
    async with get_session_context() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestFireRecurring:
    """Tests for firing recurring task ticks."""

    async def test_enqueues_job_and_records_tick(self, database):
        """Test that a tick creates a job and a ledger row."""
        at = datetime(2024, 1, 1, 12, 0)

        job = await client.fire_recurring(task(args=[30], queue="maintenance"), at)

        assert job is not None
        assert job.queue_name == "maintenance"
        assert get_codec().load(job.arguments) == [30]
        assert await client.job_state(job.id) == ExecutionState.READY
        async with get_session_context() as session:
            execution = await session.scalar(select(RecurringExecution))
        assert execution.task_key == "cleanup"
        assert execution.run_at == at
        assert execution.job_id == job.id

    async def test_same_tick_fires_once(self, database):
        """Test that a second scheduler firing the same tick enqueues nothing."""
        at = datetime(2024, 1, 1, 12, 0)

        first = await client.fire_recurring(task(), at)
        second = await client.fire_recurring(task(), at)

        assert first is not None
        assert second is None
        assert await count(Job) == 1
        assert await count(RecurringExecution) == 1

    async def test_different_ticks_fire(self, database):
        """Test that consecutive ticks each enqueue a job."""
        await client.fire_recurring(task(), datetime(2024, 1, 1, 12, 0))
        await client.fire_recurring(task(), datetime(2024, 1, 1, 12, 1))

        assert await count(Job) == 2

    async def test_clearing_job_removes_ledger_row(self, database, settings):
        """Test that the ledger row goes with its finished job."""
        settings(preserve_finished_jobs=True)
        job = await client.fire_recurring(task(), datetime(2024, 1, 1, 12, 0))
        await client.discard(job.id)

        assert await count(RecurringExecution) == 0


class TestRecurringSchedule:
    """Tests for in-process recurring timers."""

    async def test_timer_fires_due_tick(self, database):
        """Test that an armed task enqueues its job when the tick comes."""
        now = datetime(2024, 1, 1, 0, 0, 59, 990000)
        errors = []
        schedule = RecurringSchedule(on_error=errors.append, clock=lambda: now)

        schedule.schedule([task()])
        assert schedule.task_keys == ["cleanup"]
        assert schedule.next_run_at("cleanup") == datetime(2024, 1, 1, 0, 1)

        await asyncio.sleep(0.5)
        await schedule.unschedule()

        assert errors == []
        async with get_session_context() as session:
            run_ats = (await session.scalars(select(RecurringExecution.run_at))).all()
        assert run_ats == [datetime(2024, 1, 1, 0, 1)]

    async def test_two_schedulers_fire_tick_once(self, database):
        """Test that schedulers racing on the same tick enqueue one job."""
        now = datetime(2024, 1, 1, 0, 0, 59, 990000)
        errors = []
        schedules = [
            RecurringSchedule(on_error=errors.append, clock=lambda: now) for _ in range(2)
        ]

        for schedule in schedules:
            schedule.schedule([task()])
        await asyncio.sleep(0.5)
        for schedule in schedules:
            await schedule.unschedule()

        assert await count(Job) == 1
        assert errors == []

    async def test_reschedule(self):
        """Test arming, re-arming and disarming as the task list changes."""
        now = datetime(2024, 1, 1, 0, 0, 30)
        schedule = RecurringSchedule(on_error=lambda error: None, clock=lambda: now)

        schedule.schedule([task("a"), task("b")])
        assert schedule.task_keys == ["a", "b"]
        assert schedule.next_run_at("a") == datetime(2024, 1, 1, 0, 1)

        schedule.schedule([task("a", schedule="every day at 3am")])
        assert schedule.task_keys == ["a"]
        assert schedule.next_run_at("a") == datetime(2024, 1, 1, 3, 0)
        assert schedule.next_run_at("b") is None

        await schedule.unschedule()
        assert schedule.task_keys == []


class TestScheduler:
    """Tests for the Scheduler process."""

    async def test_persists_static_tasks(self, database):
        """Test that configured tasks are stored and stale ones removed."""
        async with get_session_context() as session:
            repo = RecurringTaskRepository(session)
            await repo.persist_static(
                {"old": RecurringTaskOptions(schedule="every hour", job_type="old")}
            )

        scheduler = Scheduler(
            recurring_tasks={
                "nightly": RecurringTaskOptions(
                    schedule="every day at 3am", job_type="cleanup", args=[7]
                ),
            }
        )
        await scheduler.on_boot()
        try:
            async with get_session_context() as session:
                rows = await RecurringTaskRepository(session).all()
            assert [row.key for row in rows] == ["nightly"]
            assert rows[0].static is True
            assert get_codec().load(rows[0].arguments) == [7]
            assert scheduler.recurring_schedule.task_keys == ["nightly"]
        finally:
            await scheduler.on_shutdown()

    async def test_reload_picks_up_dynamic_tasks(self, database):
        """Test that tasks added at runtime are armed on reload."""
        scheduler = Scheduler(recurring_tasks={})
        await scheduler.on_boot()
        try:
            assert scheduler.recurring_schedule.task_keys == []

            async with get_session_context() as session:
                now = utcnow()
                session.add_all(
                    [
                        RecurringTask(
                            key="dynamic",
                            schedule="every 5 minutes",
                            job_type="ping",
                            arguments=get_codec().dump([]),
                            static=False,
                            created_at=now,
                            updated_at=now,
                        ),
                        RecurringTask(
                            key="broken",
                            schedule="now and then",
                            job_type="ping",
                            static=False,
                            created_at=now,
                            updated_at=now,
                        ),
                    ]
                )

            delay = await scheduler.poll()

            assert delay == scheduler.polling_interval
            assert scheduler.recurring_schedule.task_keys == ["dynamic"]
        finally:
            await scheduler.on_shutdown()

    async def test_dynamic_tasks_survive_persist(self, database):
        """Test that persisting static tasks keeps dynamic ones."""
        async with get_session_context() as session:
            now = utcnow()
            session.add(
                RecurringTask(
                    key="dynamic",
                    schedule="every minute",
                    job_type="ping",
                    static=False,
                    created_at=now,
                    updated_at=now,
                )
            )

        async with get_session_context() as session:
            await RecurringTaskRepository(session).persist_static({})

        assert await count(RecurringTask) == 1
