"""
Worker process.

The worker claims ready jobs from its queues, as many as it has idle
threads, and executes them on its ExecutionPool. A full pool claims
nothing and sleeps until a thread frees up.
"""

import logging
import time
from typing import Any

from dbqueue import client
from dbqueue.constants import FULL_POOL_SLEEP_SECONDS, ProcessKind
from dbqueue.processes.base import Poller
from dbqueue.types.process import WorkerOptions
from dbqueue.worker.pool import ExecutionPool

logger = logging.getLogger(__name__)


class Worker(Poller):
    """
    Job worker that polls for and executes jobs.

    Features:
    - Race-free claims with FOR UPDATE SKIP LOCKED, one transaction per queue
    - Bounded thread pool; completions wake the poll loop
    - Graceful shutdown waiting up to shutdown_timeout for running jobs
    """

    kind = ProcessKind.WORKER

    def __init__(self, options: WorkerOptions | None = None, **kwargs: Any):
        options = options or WorkerOptions()
        super().__init__(polling_interval=options.polling_interval, **kwargs)

        self.queues = options.queues
        self.threads = options.threads
        self.pool = ExecutionPool(options.threads, on_idle=self.wake_up, on_error=self.on_error)

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "queues": ",".join(self.queues),
            "thread_pool_size": self.threads,
            "polling_interval": self.polling_interval,
        }

    async def poll(self) -> float:
        """
        Claim jobs for the idle threads and post them to the pool.

        Returns:
            Seconds to sleep before the next poll.
        """
        if not self.pool.idle:
            return FULL_POOL_SLEEP_SECONDS

        started_at = time.monotonic()
        jobs = await client.claim(self.queues, self.pool.idle_threads, self.process_id)
        if jobs:
            self._metrics.record_jobs_claimed(self.kind.value, len(jobs))
            logger.debug(
                f"Claimed {len(jobs)} jobs",
                extra={"process_name": self.name, "job_ids": [job.job_id for job in jobs]},
            )
        for job in jobs:
            self.pool.post(job)

        delay = self.next_delay(len(jobs), started_at)
        return delay if self.pool.idle else FULL_POOL_SLEEP_SECONDS

    async def on_shutdown(self) -> None:
        await self.pool.shutdown(self.shutdown_timeout)
