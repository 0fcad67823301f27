"""
Supervisor base: child lifecycle, signals and the shutdown state machine.
"""

import asyncio
import logging
import signal
import time
from typing import Any

from dbqueue.config import get_settings
from dbqueue.configuration import Configuration, ProcessSpec
from dbqueue.constants import ProcessKind, SupervisorState
from dbqueue.db.claims import ClaimRepository
from dbqueue.db.connection import get_session_context
from dbqueue.db.processes import ProcessRepository
from dbqueue.processes.base import BaseProcess
from dbqueue.processes.timer import run_every
from dbqueue.supervisor.maintenance import run_maintenance

logger = logging.getLogger(__name__)

GRACEFUL_SIGNALS = (signal.SIGTERM, signal.SIGINT)
IMMEDIATE_SIGNALS = (signal.SIGQUIT,)


class Supervisor(BaseProcess):
    """
    Starts the configured child processes and keeps them running.

    State machine:
    - RUNNING -> GRACEFUL_SHUTDOWN on TERM/INT: children are asked to stop
      and get shutdown_timeout seconds to do so.
    - RUNNING | GRACEFUL_SHUTDOWN -> IMMEDIATE_SHUTDOWN on QUIT, or when the
      graceful timeout elapses.
    - *_SHUTDOWN -> TERMINATED once no child is left.

    A repeated signal for the state already entered is ignored.
    """

    kind = ProcessKind.SUPERVISOR

    def __init__(self, configuration: Configuration | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        settings = get_settings()

        self.configuration = configuration or Configuration()
        self.alive_threshold = settings.process_alive_threshold_seconds
        self.tick = settings.supervisor_tick_seconds
        self.state = SupervisorState.RUNNING
        self._shutdown_deadline: float | None = None
        self._signals: asyncio.Queue[int] = asyncio.Queue()

    @property
    def metadata(self) -> dict[str, Any]:
        return {"mode": self.mode, "processes": len(self.configuration.processes)}

    @property
    def mode(self) -> str:
        raise NotImplementedError

    @property
    def has_children(self) -> bool:
        raise NotImplementedError

    def start_process(self, spec: ProcessSpec) -> None:
        raise NotImplementedError

    async def reap_children(self) -> None:
        """Collect children that ended, recovering their claims and replacing them."""
        raise NotImplementedError

    def terminate_gracefully(self) -> None:
        raise NotImplementedError

    def terminate_immediately(self) -> None:
        raise NotImplementedError

    def kill_children(self) -> None:
        """Last resort after an immediate shutdown timed out."""

    async def on_boot(self) -> None:
        self._install_supervisor_signal_handlers()
        self.add_timer(
            run_every(
                self.alive_threshold,
                self.maintenance,
                self.on_error,
                name=f"{self.name}-maintenance",
                run_now=True,
            )
        )
        for spec in self.configuration.processes:
            self.start_process(spec)

    async def run(self) -> None:
        while self.state != SupervisorState.TERMINATED:
            self.process_signals()
            await self.reap_children()

            if self.state != SupervisorState.RUNNING:
                if not self.has_children:
                    self.state = SupervisorState.TERMINATED
                    break
                self._check_shutdown_deadline()

            await self.interruptible_sleep(self.tick)

    def stop(self) -> None:
        self.begin_graceful_shutdown()

    def handle_signal(self, signum: int) -> None:
        if signum in GRACEFUL_SIGNALS:
            self.begin_graceful_shutdown()
        elif signum in IMMEDIATE_SIGNALS:
            self.begin_immediate_shutdown()

    def process_signals(self) -> None:
        while not self._signals.empty():
            self.handle_signal(self._signals.get_nowait())

    def begin_graceful_shutdown(self) -> None:
        if self.state != SupervisorState.RUNNING:
            return
        logger.info("Supervisor shutting down gracefully", extra={"process_name": self.name})
        self.state = SupervisorState.GRACEFUL_SHUTDOWN
        self._shutdown_deadline = time.monotonic() + self.shutdown_timeout
        self.terminate_gracefully()
        self.wake_up()

    def begin_immediate_shutdown(self) -> None:
        if self.state in (SupervisorState.IMMEDIATE_SHUTDOWN, SupervisorState.TERMINATED):
            return
        logger.info("Supervisor shutting down immediately", extra={"process_name": self.name})
        self.state = SupervisorState.IMMEDIATE_SHUTDOWN
        self._shutdown_deadline = time.monotonic() + self.shutdown_timeout
        self.terminate_immediately()
        self.wake_up()

    async def maintenance(self) -> None:
        result = await run_maintenance(self.alive_threshold, excluding_id=self.process_id)
        if result.pruned or result.orphaned:
            logger.info(
                "Supervisor maintenance",
                extra={"pruned": result.pruned, "orphaned_claims_failed": result.orphaned},
            )

    async def fail_claims_of(self, process_id: int, error: BaseException) -> int:
        """Fail a child's claims and delete its process row."""
        async with get_session_context() as session:
            failed = await ClaimRepository(session).fail_all_claimed_by(process_id, error)
            await ProcessRepository(session).deregister(process_id)
        self._metrics.record_claims_failed("exited", failed)
        return failed

    async def on_shutdown(self) -> None:
        self._remove_supervisor_signal_handlers()
        if self.process_id is None:
            return
        async with get_session_context() as session:
            removed = await ProcessRepository(session).deregister_supervisees(self.process_id)
        if removed:
            logger.info(
                f"Deregistered {removed} supervised processes",
                extra={"process_name": self.name},
            )

    def _check_shutdown_deadline(self) -> None:
        if self._shutdown_deadline is None or time.monotonic() < self._shutdown_deadline:
            return
        if self.state == SupervisorState.GRACEFUL_SHUTDOWN:
            logger.warning("Shutdown timeout elapsed, terminating children immediately")
            self.begin_immediate_shutdown()
        else:
            self._shutdown_deadline = None
            self.kill_children()

    def _install_supervisor_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in GRACEFUL_SIGNALS + IMMEDIATE_SIGNALS:
            loop.add_signal_handler(signum, self._enqueue_signal, signum)

    def _remove_supervisor_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in GRACEFUL_SIGNALS + IMMEDIATE_SIGNALS:
            loop.remove_signal_handler(signum)

    def _enqueue_signal(self, signum: int) -> None:
        self._signals.put_nowait(signum)
        self.wake_up()
