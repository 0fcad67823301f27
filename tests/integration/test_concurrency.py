"""
Integration tests for concurrency controls.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from dbqueue import client
from dbqueue.constants import ConcurrencyConflict, ExecutionState
from dbqueue.db import get_session_context
from dbqueue.db.claims import ClaimRepository
from dbqueue.db.concurrency import BlockedExecutionRepository, SemaphoreRepository
from dbqueue.db.models import BlockedExecution, Semaphore
from dbqueue.dispatcher.main import Dispatcher
from dbqueue.types.job import JobSpec
from dbqueue.utils import utcnow
from dbqueue.worker.handlers import ConcurrencyControls


def limited(key: str = "K", limit: int = 1, **kwargs) -> JobSpec:
    return JobSpec(
        job_type="echo",
        concurrency_key=key,
        concurrency_limit=limit,
        **kwargs,
    )


async def semaphore_value(key: str) -> int | None:
    async with get_session_context() as session:
        semaphore = await SemaphoreRepository(session).get(key)
    return semaphore.value if semaphore else None


async def blocked_count(key: str) -> int:
    async with get_session_context() as session:
        return await BlockedExecutionRepository(session).count_for(key)


async def expire_all() -> None:
    """Backdate every semaphore and blocked execution."""
    past = utcnow() - timedelta(minutes=1)
    async with get_session_context() as session:
        await session.execute(update(Semaphore).values(expires_at=past))
        await session.execute(update(BlockedExecution).values(expires_at=past))


class TestConcurrencyLimits:
    """Tests for semaphore-based admission."""

    async def test_second_job_blocks_until_first_finishes(self, database):
        """Test that finishing a job promotes the next blocked one."""
        first = await client.enqueue(limited())
        assert await semaphore_value("K") == 0

        second = await client.enqueue(limited())
        assert await client.job_state(first.id) == ExecutionState.READY
        assert await client.job_state(second.id) == ExecutionState.BLOCKED

        (claimed,) = await client.claim(None, 5, process_id=1)
        assert claimed.job_id == first.id

        async with get_session_context() as session:
            await ClaimRepository(session).finish(first.id)

        assert await client.job_state(second.id) == ExecutionState.READY
        assert await semaphore_value("K") == 0
        assert await blocked_count("K") == 0

    async def test_failure_releases_slot(self, database):
        """Test that a failed job gives its slot to the next waiter."""
        first = await client.enqueue(limited())
        second = await client.enqueue(limited())
        await client.claim(None, 1, process_id=1)

        async with get_session_context() as session:
            await ClaimRepository(session).fail(first.id, RuntimeError("boom"))

        assert await client.job_state(first.id) == ExecutionState.FAILED
        assert await client.job_state(second.id) == ExecutionState.READY

    async def test_discarding_ready_job_releases_slot(self, database):
        """Test that discarding the slot holder unblocks the next job."""
        first = await client.enqueue(limited())
        second = await client.enqueue(limited())

        assert await client.discard(first.id) is True

        assert await client.job_state(second.id) == ExecutionState.READY

    async def test_limit_above_one(self, database):
        """Test that a limit of N admits N jobs at once."""
        jobs = [await client.enqueue(limited(limit=3)) for _ in range(5)]

        states = [await client.job_state(job.id) for job in jobs]

        assert states.count(ExecutionState.READY) == 3
        assert states.count(ExecutionState.BLOCKED) == 2
        assert await semaphore_value("K") == 0

    async def test_keys_are_independent(self, database):
        """Test that different keys do not share slots."""
        a = await client.enqueue(limited("A"))
        b = await client.enqueue(limited("B"))

        assert await client.job_state(a.id) == ExecutionState.READY
        assert await client.job_state(b.id) == ExecutionState.READY

    async def test_blocked_jobs_release_in_priority_order(self, database):
        """Test that the most urgent waiter is released first."""
        holder = await client.enqueue(limited())
        low = await client.enqueue(limited(priority=10))
        high = await client.enqueue(limited(priority=1))
        await client.claim(None, 1, process_id=1)

        async with get_session_context() as session:
            await ClaimRepository(session).finish(holder.id)

        assert await client.job_state(high.id) == ExecutionState.READY
        assert await client.job_state(low.id) == ExecutionState.BLOCKED

    async def test_discard_on_conflict(self, database):
        """Test that the discard policy finishes conflicting jobs at once."""
        first = await client.enqueue(limited(concurrency_on_conflict=ConcurrencyConflict.DISCARD))
        second = await client.enqueue(limited(concurrency_on_conflict=ConcurrencyConflict.DISCARD))

        assert await client.job_state(first.id) == ExecutionState.READY
        assert await client.job_state(second.id) == ExecutionState.FINISHED
        assert await blocked_count("K") == 0

    async def test_controls_from_registered_handler(self, database, register):
        """Test that handler-level controls apply to enqueued jobs."""
        register(
            "sync_account",
            ConcurrencyControls(key=lambda account_id: account_id, limit=1),
        )(lambda context: None)

        first = await client.enqueue(JobSpec(job_type="sync_account", arguments=[42]))
        second = await client.enqueue(JobSpec(job_type="sync_account", arguments=[42]))
        other = await client.enqueue(JobSpec(job_type="sync_account", arguments=[7]))

        assert first.concurrency_key == "sync_account/42"
        assert await client.job_state(second.id) == ExecutionState.BLOCKED
        assert await client.job_state(other.id) == ExecutionState.READY

    async def test_zero_limit_is_unlimited(self, database):
        """Test that a zero limit disables concurrency control."""
        jobs = [await client.enqueue(limited(limit=0)) for _ in range(3)]

        for job in jobs:
            assert await client.job_state(job.id) == ExecutionState.READY
        assert await semaphore_value("K") is None


class TestSemaphores:
    """Tests for raw semaphore operations."""

    async def test_value_stays_within_bounds(self, database):
        """Test that wait and signal never leave [0, limit]."""
        assert await client.wait("S", 2, 60) is True
        assert await client.wait("S", 2, 60) is True
        assert await client.wait("S", 2, 60) is False
        assert await semaphore_value("S") == 0

        assert await client.signal("S", 2, 60) is True
        assert await client.signal("S", 2, 60) is True
        assert await client.signal("S", 2, 60) is False
        assert await semaphore_value("S") == 2

    async def test_signal_unknown_key(self, database):
        """Test that signalling a missing semaphore does nothing."""
        assert await client.signal("missing", 1, 60) is False
        assert await semaphore_value("missing") is None

    async def test_expire(self, database):
        """Test that expired semaphores are deleted in batches."""
        for key in ("a", "b", "c"):
            await client.wait(key, 1, 60)
        await client.wait("fresh", 1, 3600)
        async with get_session_context() as session:
            await session.execute(
                update(Semaphore)
                .where(Semaphore.key != "fresh")
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )

        async with get_session_context() as session:
            expired = await SemaphoreRepository(session).expire(batch_size=2)

        assert expired == 3
        async with get_session_context() as session:
            remaining = await session.scalar(select(func.count()).select_from(Semaphore))
        assert remaining == 1


class TestConcurrencyMaintenance:
    """Tests for unblocking jobs whose slot holder vanished."""

    async def test_unblocks_after_semaphore_expires(self, database):
        """Test that a job blocked behind a lost slot is released."""
        holder = await client.enqueue(limited())
        waiting = await client.enqueue(limited())
        await client.claim(None, 1, process_id=1)
        await expire_all()

        expired, unblocked = await Dispatcher().run_maintenance()

        assert expired == 1
        assert unblocked == 1
        assert await client.job_state(waiting.id) == ExecutionState.READY
        assert await client.job_state(holder.id) == ExecutionState.CLAIMED
        assert await semaphore_value("K") == 0

    async def test_unexpired_blocks_are_left_alone(self, database):
        """Test that blocked rows within their duration are not released."""
        await client.enqueue(limited())
        waiting = await client.enqueue(limited())
        async with get_session_context() as session:
            await session.execute(
                update(Semaphore).values(expires_at=utcnow() - timedelta(minutes=1))
            )

        expired, unblocked = await Dispatcher().run_maintenance()

        assert expired == 1
        assert unblocked == 0
        assert await client.job_state(waiting.id) == ExecutionState.BLOCKED

    async def test_key_without_free_slot_stays_blocked(self, database):
        """Test that an expired block with an exhausted semaphore waits."""
        await client.enqueue(limited())
        waiting = await client.enqueue(limited())
        async with get_session_context() as session:
            await session.execute(
                update(BlockedExecution).values(expires_at=utcnow() - timedelta(minutes=1))
            )

        async with get_session_context() as session:
            unblocked = await BlockedExecutionRepository(session).unblock(batch_size=10)

        assert unblocked == 0
        assert await client.job_state(waiting.id) == ExecutionState.BLOCKED


@pytest.mark.postgres
class TestConcurrentSemaphores:
    """Tests for semaphores under concurrent waits and signals."""

    async def test_concurrent_waits_never_exceed_limit(self, database):
        """Test that racing waiters on a new key take exactly limit slots."""
        results = await asyncio.gather(*(client.wait("race", 3, 60) for _ in range(20)))

        assert sum(results) == 3
        assert await semaphore_value("race") == 0

    async def test_concurrent_signals_never_exceed_limit(self, database):
        """Test that racing signals stop at the limit."""
        for _ in range(3):
            await client.wait("race", 3, 60)

        results = await asyncio.gather(*(client.signal("race", 3, 60) for _ in range(20)))

        assert sum(results) == 3
        assert await semaphore_value("race") == 3

    async def test_interleaved_waits_and_signals_stay_in_bounds(self, database):
        """Test that mixed waits and signals keep the value within [0, limit]."""
        await client.wait("race", 3, 60)
        await client.signal("race", 3, 60)

        calls = []
        for _ in range(30):
            calls.append(client.wait("race", 3, 60))
            calls.append(client.signal("race", 3, 60))
        results = await asyncio.gather(*calls)

        taken = sum(results[0::2])
        returned = sum(results[1::2])
        value = await semaphore_value("race")
        assert 0 <= value <= 3
        assert value == 3 - taken + returned
