"""
Integration tests for queue selection and administration.
"""

from datetime import timedelta

from sqlalchemy import update

from dbqueue import client
from dbqueue.constants import ExecutionState
from dbqueue.db import get_session_context
from dbqueue.db.models import ReadyExecution
from dbqueue.db.queues import QueueRepository, QueueSelector
from dbqueue.types.job import JobSpec
from dbqueue.utils import utcnow


async def enqueue_in(*queue_names: str) -> None:
    for queue_name in queue_names:
        await client.enqueue(JobSpec(job_type="echo", queue_name=queue_name))


async def scopes(raw_queues: list[str] | None) -> list[str | None]:
    async with get_session_context() as session:
        return await QueueSelector(raw_queues, session).scoped_queues()


class TestQueueSelector:
    """Tests for resolving queue patterns."""

    async def test_all_queues_is_one_scope(self, database):
        """Test that '*' with nothing paused scans every queue at once."""
        await enqueue_in("a", "b")

        assert await scopes(["*"]) == [None]
        assert await scopes(None) == [None]
        assert await scopes([" ", ""]) == [None]

    async def test_exact_names_keep_order(self, database):
        """Test that listed queues are returned in the order given."""
        assert await scopes(["critical", "default", "low"]) == ["critical", "default", "low"]

    async def test_prefix_patterns(self, database):
        """Test that a trailing '*' matches existing queues by prefix."""
        await enqueue_in("mail_low", "mail_high", "reports")

        assert await scopes(["reports", "mail_*"]) == ["reports", "mail_high", "mail_low"]

    async def test_duplicates_removed(self, database):
        """Test that a queue matched twice is polled once."""
        await enqueue_in("mail_high")

        assert await scopes(["mail_high", "mail_*"]) == ["mail_high"]

    async def test_paused_queues_excluded(self, database):
        """Test that paused queues never match."""
        await enqueue_in("a", "b", "c")
        await client.pause("b")

        assert await scopes(["*"]) == ["a", "c"]
        assert await scopes(["b", "c"]) == ["c"]

    async def test_everything_paused(self, database):
        """Test that no scopes remain when the only queue is paused."""
        await enqueue_in("a")
        await client.pause("a")

        assert await scopes(["*"]) == []


class TestQueueRepository:
    """Tests for queue administration."""

    async def test_pause_and_resume(self, database):
        """Test pausing twice and resuming."""
        assert await client.pause("mail") is True
        assert await client.pause("mail") is False

        async with get_session_context() as session:
            repo = QueueRepository(session)
            assert await repo.is_paused("mail") is True
            assert await repo.paused_queue_names() == ["mail"]

        assert await client.resume("mail") is True
        assert await client.resume("mail") is False

    async def test_size_and_latency(self, database):
        """Test the ready size and oldest-job age of a queue."""
        await enqueue_in("mail", "mail", "other")
        async with get_session_context() as session:
            await session.execute(
                update(ReadyExecution)
                .where(ReadyExecution.queue_name == "mail")
                .values(created_at=utcnow() - timedelta(seconds=30))
            )

        async with get_session_context() as session:
            repo = QueueRepository(session)
            assert await repo.size("mail") == 2
            assert await repo.size("empty") == 0
            assert 29 <= await repo.latency("mail") < 60
            assert await repo.latency("empty") == 0.0
            assert await repo.all_queue_names() == ["mail", "other"]

    async def test_clear(self, database):
        """Test discarding every ready job of a queue."""
        await enqueue_in("mail", "mail", "mail", "other")
        spec = JobSpec(job_type="echo", queue_name="mail", concurrency_key="K", concurrency_limit=1)
        await client.enqueue(spec)
        blocked = await client.enqueue(spec.model_copy(update={"queue_name": "other"}))

        async with get_session_context() as session:
            cleared = await QueueRepository(session).clear("mail", batch_size=2)

        assert cleared == 4
        async with get_session_context() as session:
            repo = QueueRepository(session)
            assert await repo.size("mail") == 0
            assert await repo.size("other") == 2
        # The cleared slot holder let the blocked job through
        assert await client.job_state(blocked.id) == ExecutionState.READY
