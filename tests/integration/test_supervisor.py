"""
Integration tests for supervisors recovering and replacing children.
"""

import asyncio
import os
import signal
import time

import pytest
from sqlalchemy import func, select

from dbqueue import client
from dbqueue.config import Settings
from dbqueue.configuration import Configuration, ProcessSpec
from dbqueue.constants import ExecutionState, ProcessKind, SupervisorState
from dbqueue.db import get_session_context
from dbqueue.db.models import FailedExecution, Process
from dbqueue.db.processes import ProcessRepository
from dbqueue.supervisor.async_ import AsyncChild, AsyncSupervisor
from dbqueue.supervisor.fork import ForkedChild, ForkSupervisor
from dbqueue.types.job import JobSpec
from dbqueue.types.process import DispatcherOptions, WorkerOptions
from dbqueue.worker.main import Worker

WORKER_SPEC = ProcessSpec(ProcessKind.WORKER, WorkerOptions(queues=["mail"], threads=2))


async def register_worker(name: str) -> Process:
    async with get_session_context() as session:
        return await ProcessRepository(session).register(
            kind=ProcessKind.WORKER, name=name, pid=4242, hostname="test-host"
        )


async def claim_one(process_id: int) -> int:
    job = await client.enqueue(JobSpec(job_type="echo"))
    await client.claim(None, 1, process_id)
    return job.id


async def failure_message(job_id: int) -> str:
    async with get_session_context() as session:
        failure = await session.scalar(
            select(FailedExecution).where(FailedExecution.job_id == job_id)
        )
    return f"{failure.error['exception_class']}: {failure.error['message']}"


async def wait_until(probe, expected, timeout: float = 15.0) -> None:
    async def _poll() -> None:
        while await probe() != expected:
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_poll(), timeout)


class TestForkSupervisorRecovery:
    """Tests for reaping forked children."""

    @pytest.fixture
    def supervisor(self, monkeypatch) -> ForkSupervisor:
        supervisor = ForkSupervisor(Configuration(Settings()))
        supervisor.started: list[ProcessSpec] = []
        monkeypatch.setattr(supervisor, "start_process", supervisor.started.append)
        return supervisor

    def exits(self, monkeypatch, supervisor: ForkSupervisor, *reaped) -> None:
        monkeypatch.setattr(supervisor, "_reap_terminated", lambda: list(reaped))

    async def test_crashed_child_claims_failed_and_replaced(
        self, database, monkeypatch, supervisor
    ):
        """Test that a child exiting non-zero loses its claims and is replaced."""
        process = await register_worker("worker-crashed")
        job_id = await claim_one(process.id)
        supervisor.forks[1234] = ForkedChild(WORKER_SPEC, "worker-crashed")
        self.exits(monkeypatch, supervisor, (1234, 1 << 8))

        await supervisor.reap_children()

        assert await client.job_state(job_id) == ExecutionState.FAILED
        message = await failure_message(job_id)
        assert message.startswith("ProcessExitError")
        assert "pid=1234" in message
        assert "status 1" in message
        assert supervisor.started == [WORKER_SPEC]
        assert supervisor.forks == {}
        async with get_session_context() as session:
            assert await ProcessRepository(session).get(process.id) is None

    async def test_killed_child_records_signal(self, database, monkeypatch, supervisor):
        """Test that a child killed by a signal records the signal number."""
        process = await register_worker("worker-killed")
        job_id = await claim_one(process.id)
        supervisor.forks[1235] = ForkedChild(WORKER_SPEC, "worker-killed")
        self.exits(monkeypatch, supervisor, (1235, 9))

        await supervisor.reap_children()

        assert "signal 9" in await failure_message(job_id)

    async def test_clean_exit_without_row(self, database, monkeypatch, supervisor):
        """Test that a child that deregistered itself is just replaced."""
        supervisor.forks[1236] = ForkedChild(WORKER_SPEC, "worker-gone")
        self.exits(monkeypatch, supervisor, (1236, 0))

        await supervisor.reap_children()

        assert supervisor.started == [WORKER_SPEC]

    async def test_no_replacement_during_shutdown(self, database, monkeypatch, supervisor):
        """Test that children reaped while shutting down are not replaced."""
        monkeypatch.setattr(supervisor, "terminate_gracefully", lambda: None)
        supervisor.forks[1237] = ForkedChild(WORKER_SPEC, "worker-stopping")
        supervisor.begin_graceful_shutdown()
        self.exits(monkeypatch, supervisor, (1237, 0))

        await supervisor.reap_children()

        assert supervisor.started == []
        assert supervisor.has_children is False

    async def test_unknown_pid_ignored(self, database, monkeypatch, supervisor):
        """Test that exits of processes the supervisor did not fork are ignored."""
        self.exits(monkeypatch, supervisor, (9999, 0))

        await supervisor.reap_children()

        assert supervisor.started == []


class TestAsyncSupervisor:
    """Tests for the async-mode supervisor."""

    async def test_crashed_child_claims_failed_and_replaced(self, database, monkeypatch):
        """Test that a crashed child task loses its claims and is replaced."""
        supervisor = AsyncSupervisor(Configuration(Settings()))
        started: list[ProcessSpec] = []
        monkeypatch.setattr(supervisor, "start_process", started.append)

        process = await register_worker("worker-async")
        job_id = await claim_one(process.id)
        worker = Worker(WORKER_SPEC.options, name="worker-async")
        worker.process_id = process.id

        async def crash():
            raise RuntimeError("event loop blew up")

        task = asyncio.create_task(crash())
        await asyncio.gather(task, return_exceptions=True)
        supervisor.children[task] = AsyncChild(WORKER_SPEC, worker)

        await supervisor.reap_children()
        await worker.pool.shutdown(timeout=0)

        assert await client.job_state(job_id) == ExecutionState.FAILED
        assert "event loop blew up" in await failure_message(job_id)
        assert started == [WORKER_SPEC]

    async def test_runs_jobs_and_shuts_down(self, database, register):
        """Test a full supervisor lifecycle with real children."""
        register("noop")(lambda context: None)
        settings = Settings(
            supervisor_mode="async",
            supervisor_tick_seconds=0.05,
            workers=[WorkerOptions(threads=2, polling_interval=0.05)],
            dispatchers=[DispatcherOptions(polling_interval=0.05)],
            scheduler=None,
        )
        supervisor = AsyncSupervisor(Configuration(settings))
        supervisor.tick = settings.supervisor_tick_seconds
        job = await client.enqueue(JobSpec(job_type="noop"))

        task = asyncio.create_task(supervisor.start())
        try:

            async def finished() -> None:
                while await client.job_state(job.id) != ExecutionState.FINISHED:
                    await asyncio.sleep(0.05)

            await asyncio.wait_for(finished(), timeout=10)

            async with get_session_context() as session:
                supervisees = await ProcessRepository(session).supervisees(
                    supervisor.process_id
                )
            assert sorted(process.kind for process in supervisees) == ["Dispatcher", "Worker"]
        finally:
            supervisor.stop()
            await asyncio.wait_for(task, timeout=10)

        assert supervisor.state == SupervisorState.TERMINATED
        async with get_session_context() as session:
            remaining = await session.scalar(select(func.count()).select_from(Process))
        assert remaining == 0


@pytest.mark.postgres
@pytest.mark.skipif(not hasattr(os, "fork"), reason="needs os.fork")
class TestForkedChildren:
    """Tests with real forked children."""

    async def test_killed_child_claims_failed_and_replaced(self, database, settings, register):
        """Test that a SIGKILLed worker's claim fails and a new worker registers."""
        register("hold")(lambda context: time.sleep(30))
        settings(
            supervisor_tick_seconds=0.05,
            workers=[WorkerOptions(threads=1, polling_interval=0.05)],
            dispatchers=[],
            scheduler=None,
        )
        job = await client.enqueue(JobSpec(job_type="hold"))

        supervisor = ForkSupervisor(Configuration())
        task = asyncio.create_task(supervisor.start())
        try:
            await wait_until(lambda: client.job_state(job.id), ExecutionState.CLAIMED)
            (killed_pid,) = supervisor.forks

            os.kill(killed_pid, signal.SIGKILL)

            await wait_until(lambda: client.job_state(job.id), ExecutionState.FAILED)
            assert "signal 9" in await failure_message(job.id)

            async def replacement_registered() -> bool:
                async with get_session_context() as session:
                    pids = (await session.scalars(select(Process.pid))).all()
                return any(pid in supervisor.forks for pid in pids)

            await wait_until(replacement_registered, True)
            assert killed_pid not in supervisor.forks
            assert len(supervisor.forks) == 1
        finally:
            supervisor.stop()
            await asyncio.wait_for(task, timeout=15)

        assert supervisor.state == SupervisorState.TERMINATED
