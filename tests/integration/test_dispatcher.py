"""
Integration tests for scheduled job dispatch.
"""

from datetime import timedelta

from sqlalchemy import func, select, update

from dbqueue import client
from dbqueue.constants import ExecutionState
from dbqueue.db import get_session_context
from dbqueue.db.models import Job, ScheduledExecution
from dbqueue.dispatcher.main import Dispatcher
from dbqueue.types.job import JobSpec
from dbqueue.types.process import DispatcherOptions
from dbqueue.utils import utcnow


async def make_due(*jobs: Job) -> None:
    """Move scheduled executions into the past."""
    past = utcnow() - timedelta(seconds=1)
    async with get_session_context() as session:
        await session.execute(
            update(ScheduledExecution)
            .where(ScheduledExecution.job_id.in_([job.id for job in jobs]))
            .values(scheduled_at=past)
        )


async def scheduled_count() -> int:
    async with get_session_context() as session:
        return await session.scalar(select(func.count()).select_from(ScheduledExecution))


class TestDispatcher:
    """Tests for the Dispatcher process."""

    @staticmethod
    async def _schedule(**kwargs) -> Job:
        return await client.enqueue_at(
            JobSpec(job_type="echo", **kwargs), utcnow() + timedelta(hours=1)
        )

    async def test_dispatches_due_jobs(self, database):
        """Test that due jobs become ready and future ones stay scheduled."""
        due = await self._schedule()
        later = await self._schedule()
        await make_due(due)

        dispatcher = Dispatcher(DispatcherOptions(polling_interval=2.0))
        delay = await dispatcher.poll()

        assert delay == 0
        assert await client.job_state(due.id) == ExecutionState.READY
        assert await client.job_state(later.id) == ExecutionState.SCHEDULED

        # Nothing left that is due: wait the full interval
        assert await dispatcher.poll() == 2.0

    async def test_batch_size(self, database):
        """Test that one poll promotes at most batch_size jobs, earliest first."""
        jobs = [await self._schedule() for _ in range(5)]
        await make_due(*jobs)

        dispatched = await Dispatcher(DispatcherOptions(batch_size=2)).dispatch_next_batch()

        assert dispatched == 2
        assert await scheduled_count() == 3
        assert await client.job_state(jobs[0].id) == ExecutionState.READY
        assert await client.job_state(jobs[1].id) == ExecutionState.READY

    async def test_dispatch_applies_concurrency(self, database):
        """Test that promoted jobs go through concurrency admission."""
        jobs = [
            await self._schedule(concurrency_key="K", concurrency_limit=1) for _ in range(2)
        ]
        await make_due(*jobs)

        assert await Dispatcher().dispatch_next_batch() == 2

        assert await client.job_state(jobs[0].id) == ExecutionState.READY
        assert await client.job_state(jobs[1].id) == ExecutionState.BLOCKED

    async def test_paused_queue_stays_scheduled(self, database):
        """Test that due jobs in a paused queue wait for resume."""
        paused = await self._schedule(queue_name="paused")
        active = await self._schedule(queue_name="active")
        await make_due(paused, active)
        await client.pause("paused")

        dispatcher = Dispatcher()
        assert await dispatcher.dispatch_next_batch() == 1
        assert await client.job_state(paused.id) == ExecutionState.SCHEDULED
        assert await client.job_state(active.id) == ExecutionState.READY

        await client.resume("paused")
        assert await dispatcher.dispatch_next_batch() == 1
        assert await client.job_state(paused.id) == ExecutionState.READY

    async def test_clears_finished_jobs_during_maintenance(self, database, settings):
        """Test that maintenance deletes finished jobs past retention."""
        settings(preserve_finished_jobs=True, clear_finished_jobs_after_seconds=0)
        job = await client.enqueue(
            JobSpec(job_type="echo", concurrency_key="K", concurrency_limit=1)
        )
        discarded = await client.enqueue(
            JobSpec(
                job_type="echo",
                concurrency_key="K",
                concurrency_limit=1,
                concurrency_on_conflict="discard",
            )
        )
        assert await client.job_state(discarded.id) == ExecutionState.FINISHED

        await Dispatcher().run_maintenance()

        assert await client.job_state(discarded.id) is None
        assert await client.job_state(job.id) == ExecutionState.READY

    async def test_metadata(self):
        """Test the metadata stored on the dispatcher's process row."""
        dispatcher = Dispatcher(
            DispatcherOptions(batch_size=10, concurrency_maintenance=False)
        )

        assert dispatcher.metadata["batch_size"] == 10
        assert dispatcher.metadata["concurrency_maintenance_interval"] is None
        assert dispatcher.name.startswith("dispatcher-")
