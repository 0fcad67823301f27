"""
Dispatcher process.

Promotes due scheduled jobs to ready (or blocked) and, on a separate
timer, runs concurrency maintenance: expired semaphores are deleted and
jobs blocked past their expiry get a chance at a free slot.
"""

import logging
import time
from typing import Any

from dbqueue import client
from dbqueue.config import get_settings
from dbqueue.constants import DEFAULT_CLEAR_BATCH_SIZE, SPAN_DISPATCH_SCHEDULED, ProcessKind
from dbqueue.db.concurrency import BlockedExecutionRepository, SemaphoreRepository
from dbqueue.db.connection import get_session_context
from dbqueue.db.scheduled import ScheduledExecutionRepository
from dbqueue.observability.tracing import get_tracer
from dbqueue.processes.base import Poller
from dbqueue.processes.timer import run_every
from dbqueue.types.process import DispatcherOptions

logger = logging.getLogger(__name__)


class Dispatcher(Poller):
    """
    Scheduled job dispatcher with concurrency maintenance.
    """

    kind = ProcessKind.DISPATCHER

    def __init__(self, options: DispatcherOptions | None = None, **kwargs: Any):
        options = options or DispatcherOptions()
        super().__init__(polling_interval=options.polling_interval, **kwargs)

        self.batch_size = options.batch_size
        self.concurrency_maintenance = options.concurrency_maintenance
        self.concurrency_maintenance_interval = options.concurrency_maintenance_interval

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "polling_interval": self.polling_interval,
            "batch_size": self.batch_size,
            "concurrency_maintenance_interval": (
                self.concurrency_maintenance_interval if self.concurrency_maintenance else None
            ),
        }

    async def on_boot(self) -> None:
        if self.concurrency_maintenance:
            self.add_timer(
                run_every(
                    self.concurrency_maintenance_interval,
                    self.run_maintenance,
                    self.on_error,
                    name=f"{self.name}-concurrency-maintenance",
                    run_now=True,
                )
            )

    async def poll(self) -> float:
        """
        Dispatch one batch of due scheduled jobs.

        Returns:
            0 when something was dispatched, so the next batch follows
            immediately; the polling interval otherwise.
        """
        started_at = time.monotonic()
        dispatched = await self.dispatch_next_batch()
        if self.adaptive_poller is not None:
            return self.next_delay(dispatched, started_at)
        return self.polling_interval if dispatched == 0 else 0

    async def dispatch_next_batch(self) -> int:
        with get_tracer().start_as_current_span(SPAN_DISPATCH_SCHEDULED) as span:
            async with get_session_context() as session:
                dispatched = await ScheduledExecutionRepository(session).dispatch_next_batch(
                    self.batch_size
                )
            span.set_attribute("dispatched", dispatched)

        self._metrics.record_jobs_dispatched(dispatched)
        return dispatched

    async def run_maintenance(self) -> tuple[int, int]:
        """
        Expire semaphores, unblock waiting jobs and clear old finished jobs.

        Returns:
            Number of semaphores expired and jobs unblocked.
        """
        async with get_session_context() as session:
            expired = await SemaphoreRepository(session).expire(self.batch_size)
        async with get_session_context() as session:
            unblocked = await BlockedExecutionRepository(session).unblock(self.batch_size)

        self._metrics.record_concurrency_maintenance(expired, unblocked)
        if expired or unblocked:
            logger.info(
                "Concurrency maintenance",
                extra={"semaphores_expired": expired, "jobs_unblocked": unblocked},
            )

        if get_settings().preserve_finished_jobs:
            await client.clear_finished_jobs(DEFAULT_CLEAR_BATCH_SIZE)
        return expired, unblocked
