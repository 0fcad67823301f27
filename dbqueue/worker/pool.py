"""
Bounded thread pool for job execution.
"""

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from dbqueue.constants import SPAN_EXECUTE_JOB
from dbqueue.db.claims import ClaimRepository
from dbqueue.db.connection import get_session_context
from dbqueue.observability.metrics import get_metrics
from dbqueue.observability.tracing import get_tracer
from dbqueue.types.job import ClaimedJob, JobResult
from dbqueue.worker.handlers import execute_job

logger = logging.getLogger(__name__)


class ExecutionPool:
    """
    Runs claimed jobs on a fixed number of threads.

    Job bodies run on the threads; recording the outcome happens back on
    the event loop. on_idle is called each time a slot frees up.
    """

    def __init__(
        self,
        size: int,
        on_idle: Callable[[], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ):
        self.size = size
        self._available = size
        self._on_idle = on_idle
        self._on_error = on_error
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix="dbqueue-worker")
        self._tasks: set[asyncio.Task] = set()
        self._metrics = get_metrics()

    @property
    def idle_threads(self) -> int:
        return self._available

    @property
    def idle(self) -> bool:
        return self._available > 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def post(self, job: ClaimedJob) -> asyncio.Task:
        """
        Start executing a claimed job.

        Args:
            job: The claimed job.

        Returns:
            The task running the job and recording its outcome.
        """
        self._available -= 1
        task = asyncio.create_task(self._perform(job), name=f"job-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    async def shutdown(self, timeout: float) -> None:
        """
        Wait up to timeout seconds for in-flight jobs.

        Jobs still running afterwards keep their claims, which are failed
        by orphan recovery once this process deregisters.
        """
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} jobs to complete")
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning(
                    f"{len(pending)} jobs still running after shutdown timeout",
                    extra={"timeout": timeout},
                )
                for task in pending:
                    task.cancel()

        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _perform(self, job: ClaimedJob) -> None:
        loop = asyncio.get_running_loop()

        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", job.job_id)
            span.set_attribute("job_type", job.job_type)
            span.set_attribute("queue_name", job.queue_name)

            result: JobResult = await loop.run_in_executor(self._executor, execute_job, job)
            span.set_attribute("success", result.success)

        try:
            async with get_session_context() as session:
                claims = ClaimRepository(session)
                if result.success:
                    await claims.finish(job.job_id)
                else:
                    await claims.fail(job.job_id, result.error or {})
        except Exception as e:
            # The claim stays put and is recovered once this process is gone
            if self._on_error is not None:
                self._on_error(e)
            else:
                logger.exception(
                    "Failed to record job outcome",
                    extra={"job_id": job.job_id},
                )
            return

        status = "succeeded" if result.success else "failed"
        self._metrics.record_job_completed(
            queue_name=job.queue_name,
            status=status,
            duration_seconds=(result.duration_ms or 0.0) / 1000,
        )
        logger.info(
            f"Job {status}",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "duration_ms": result.duration_ms,
            },
        )

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._available += 1
        if self._on_idle is not None:
            self._on_idle()
