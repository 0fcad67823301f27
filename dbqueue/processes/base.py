"""
Base classes for registered processes.

Every worker, dispatcher, scheduler and supervisor registers a row in
the processes table when it boots, heartbeats while it runs and
deregisters when it shuts down cleanly.
"""

import asyncio
import logging
import os
import secrets
import signal
import time
from collections.abc import Callable
from typing import Any

from dbqueue.config import get_settings
from dbqueue.constants import IMMEDIATE_EXIT_STATUS, ProcessKind
from dbqueue.db.connection import get_session_context
from dbqueue.db.processes import ProcessRepository
from dbqueue.observability.logging import bind_context
from dbqueue.observability.metrics import get_metrics
from dbqueue.polling.adaptive import (
    AdaptivePoller,
    AdaptivePollingConfig,
    PollingStats,
    PollResult,
)
from dbqueue.processes.timer import cancel_timers, run_every
from dbqueue.utils import hostname

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], None]


class BaseProcess:
    """
    A process registered in the processes table.

    Subclasses implement run(), the main loop. Loop errors go to on_error
    and are re-raised; errors in background timers only go to on_error.
    """

    kind: ProcessKind

    def __init__(
        self,
        supervisor_id: int | None = None,
        supervisor_pid: int | None = None,
        handle_signals: bool = False,
        on_error: ErrorHandler | None = None,
        name: str | None = None,
    ):
        """
        Initialize the process.

        Args:
            supervisor_id: Row ID of the supervising process.
            supervisor_pid: OS pid of a forking supervisor. The process
                stops when its parent pid no longer matches.
            handle_signals: Install TERM/INT/QUIT handlers on start.
            on_error: Error callback. Defaults to logging the exception.
            name: Unique process name. Generated when not given.
        """
        settings = get_settings()

        self.name = name or f"{self.kind.value.lower()}-{secrets.token_hex(10)}"
        self.supervisor_id = supervisor_id
        self.supervisor_pid = supervisor_pid
        self.handle_signals = handle_signals
        self.on_error = on_error or self._log_error
        self.heartbeat_interval = settings.process_heartbeat_interval_seconds
        self.shutdown_timeout = settings.shutdown_timeout_seconds

        self.process_id: int | None = None
        self.booted = False
        self._stopped = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake_event: asyncio.Event | None = None
        self._timers: list[asyncio.Task] = []
        self._metrics = get_metrics()

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def metadata(self) -> dict[str, Any]:
        """Kind-specific details stored on the process row."""
        return {}

    @property
    def supervisor_went_away(self) -> bool:
        return self.supervisor_pid is not None and os.getppid() != self.supervisor_pid

    async def start(self) -> None:
        """Register, run the main loop until stopped, then deregister."""
        self._loop = asyncio.get_running_loop()
        self._wake_event = asyncio.Event()
        if self.handle_signals:
            self._install_signal_handlers()

        try:
            await self._boot()
            self.booted = True
            await self.run()
        except Exception as e:
            self.on_error(e)
            raise
        finally:
            await self._shutdown()

    def stop(self) -> None:
        """Ask the main loop to stop after its current iteration."""
        if not self._stopped:
            logger.info(f"{self.kind.value} stopping", extra={"process_name": self.name})
        self._stopped = True
        self.wake_up()

    def wake_up(self) -> None:
        """
        Interrupt the current sleep.

        Safe to call from any thread.
        """
        if self._loop is None or self._wake_event is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._wake_event.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wake_event.set)

    async def interruptible_sleep(self, seconds: float) -> None:
        """Sleep until the timeout, a wake_up() call or a stop request."""
        if self._wake_event is None:
            await asyncio.sleep(seconds)
            return
        if self._stopped or seconds <= 0:
            self._wake_event.clear()
            return

        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=seconds)
        except TimeoutError:
            pass
        finally:
            self._wake_event.clear()

    async def run(self) -> None:
        raise NotImplementedError

    async def heartbeat(self) -> None:
        """Touch the process row, stopping if it was deleted."""
        if self.process_id is None:
            return
        async with get_session_context() as session:
            alive = await ProcessRepository(session).heartbeat(self.process_id)
        if not alive:
            logger.warning(
                "Process row is gone, stopping",
                extra={"process_name": self.name, "process_id": self.process_id},
            )
            self.stop()

    async def on_boot(self) -> None:
        """Hook run after registration, before the main loop."""

    async def on_shutdown(self) -> None:
        """Hook run after the main loop, before deregistration."""

    def add_timer(self, task: asyncio.Task) -> asyncio.Task:
        self._timers.append(task)
        return task

    async def _boot(self) -> None:
        bind_context(process_name=self.name, process_kind=self.kind.value)

        async with get_session_context() as session:
            process = await ProcessRepository(session).register(
                kind=self.kind,
                name=self.name,
                pid=os.getpid(),
                hostname=hostname(),
                supervisor_id=self.supervisor_id,
                metadata=self.metadata,
            )
            self.process_id = process.id

        self.add_timer(
            run_every(
                self.heartbeat_interval,
                self.heartbeat,
                self.on_error,
                name=f"{self.name}-heartbeat",
            )
        )
        await self.on_boot()

        logger.info(
            f"{self.kind.value} started",
            extra={"process_name": self.name, "process_id": self.process_id, **self.metadata},
        )

    async def _shutdown(self) -> None:
        await cancel_timers(self._timers)
        self._timers.clear()
        try:
            await self.on_shutdown()
        finally:
            await self._deregister()

        logger.info(f"{self.kind.value} stopped", extra={"process_name": self.name})

    async def _deregister(self) -> None:
        if self.process_id is None:
            return
        try:
            async with get_session_context() as session:
                await ProcessRepository(session).deregister(self.process_id)
        except Exception as e:
            self.on_error(e)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self.stop)
        loop.add_signal_handler(signal.SIGINT, self.stop)
        loop.add_signal_handler(signal.SIGQUIT, self._exit_immediately)

    def _exit_immediately(self) -> None:
        logger.info(f"{self.kind.value} exiting immediately", extra={"process_name": self.name})
        os._exit(IMMEDIATE_EXIT_STATUS)

    def _log_error(self, error: BaseException) -> None:
        logger.error(
            f"Error in {self.kind.value.lower()} {self.name}: {error}",
            exc_info=error,
        )


class Poller(BaseProcess):
    """
    A process whose main loop polls, then sleeps.

    poll() returns the number of seconds to sleep before polling again.
    """

    def __init__(self, polling_interval: float, **kwargs: Any):
        super().__init__(**kwargs)
        self.polling_interval = polling_interval

        settings = get_settings()
        self.adaptive_poller: AdaptivePoller | None = None
        self.polling_stats: PollingStats | None = None
        if settings.adaptive_polling_enabled:
            config = AdaptivePollingConfig.from_settings(settings).validate()
            self.adaptive_poller = AdaptivePoller(polling_interval, config)
            self.polling_stats = PollingStats(self.name, config)

    async def run(self) -> None:
        while not self.stopped:
            if self.supervisor_went_away:
                logger.warning(
                    "Supervisor went away, stopping",
                    extra={"process_name": self.name, "supervisor_pid": self.supervisor_pid},
                )
                self.stop()
                break

            delay = await self.poll()
            await self.interruptible_sleep(delay)

    async def poll(self) -> float:
        raise NotImplementedError

    def next_delay(self, job_count: int, started_at: float) -> float:
        """
        Sleep after a poll that handled job_count jobs.

        Uses the adaptive poller when enabled, the fixed polling interval
        otherwise.
        """
        if self.adaptive_poller is None or self.polling_stats is None:
            return self.polling_interval

        interval = self.adaptive_poller.next_interval(
            PollResult(job_count=job_count, execution_time=time.monotonic() - started_at)
        )
        self.polling_stats.record(job_count)
        if self.polling_stats.should_log():
            self.polling_stats.log(self.adaptive_poller)
        self._metrics.update_poll_interval(self.name, interval)
        return interval
