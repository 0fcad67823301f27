"""
Job handlers registry and execution.

Handlers are registered per job type with a decorator at import time.
A handler receives a JobContext and may be a plain function or a
coroutine function; both run on a worker pool thread.

Job handlers should be idempotent - a job may run more than once if its
worker dies after claiming it and the failed job is retried.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from dbqueue.codec import get_codec
from dbqueue.constants import ConcurrencyConflict
from dbqueue.errors import ExecutionFailure, UnknownJobTypeError, error_payload
from dbqueue.types.job import ClaimedJob, JobContext, JobResult, JobSpec

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Any]


@dataclass(frozen=True)
class ConcurrencyControls:
    """
    Per-type concurrency limits applied when a job is enqueued.

    key is either a fixed string or a function of the job arguments.
    """

    key: str | Callable[..., str]
    limit: int = 1
    duration: int | None = None
    on_conflict: ConcurrencyConflict = ConcurrencyConflict.BLOCK
    group: str | None = None

    def key_for(self, job_type: str, arguments: list[Any]) -> str:
        value = self.key(*arguments) if callable(self.key) else self.key
        return f"{self.group or job_type}/{value}"


@dataclass(frozen=True)
class RegisteredHandler:
    handler: JobHandler
    concurrency: ConcurrencyControls | None = None


# Handler registry
_handlers: dict[str, RegisteredHandler] = {}


def register_handler(
    job_type: str,
    concurrency: ConcurrencyControls | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.
        concurrency: Optional concurrency controls for jobs of this type.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email", ConcurrencyControls(key=lambda user_id: user_id))
        def handle_send_email(context: JobContext) -> None:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = RegisteredHandler(handler, concurrency)
        logger.debug(f"Registered handler for job type: {job_type}")
        return handler
    return decorator


def unregister_handler(job_type: str) -> None:
    _handlers.pop(job_type, None)


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    registered = _handlers.get(job_type)
    return registered.handler if registered else None


def get_concurrency_controls(job_type: str) -> ConcurrencyControls | None:
    registered = _handlers.get(job_type)
    return registered.concurrency if registered else None


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


def apply_concurrency_controls(spec: JobSpec) -> JobSpec:
    """
    Fill a job spec's concurrency fields from its type's controls.

    Explicit values on the JobSpec win.
    """
    if spec.concurrency_key is not None:
        return spec

    controls = get_concurrency_controls(spec.job_type)
    if controls is None:
        return spec

    return spec.model_copy(
        update={
            "concurrency_key": controls.key_for(spec.job_type, spec.arguments),
            "concurrency_limit": spec.concurrency_limit or controls.limit,
            "concurrency_duration": spec.concurrency_duration or controls.duration,
            "concurrency_on_conflict": controls.on_conflict,
        }
    )


def execute_job(job: ClaimedJob) -> JobResult:
    """
    Execute a claimed job using the appropriate handler.

    Runs on a pool thread. Exceptions raised by the handler are caught
    here and returned as a failed JobResult; they never propagate.

    Args:
        job: The claimed job.

    Returns:
        JobResult from the handler.
    """
    start_time = time.monotonic()

    handler = get_handler(job.job_type)
    if handler is None:
        logger.error(
            f"No handler for job type: {job.job_type}",
            extra={"job_id": job.job_id},
        )
        return JobResult(
            success=False,
            error=error_payload(UnknownJobTypeError(job.job_type)),
            duration_ms=0.0,
        )

    try:
        context = JobContext(
            job_id=job.job_id,
            job_type=job.job_type,
            queue_name=job.queue_name,
            priority=job.priority,
            arguments=get_codec().load(job.arguments),
        )
        if inspect.iscoroutinefunction(handler):
            output = asyncio.run(handler(context))
        else:
            output = handler(context)
    except Exception as e:
        logger.warning(
            "Handler raised exception",
            extra={"job_id": job.job_id, "error": str(e)},
        )
        return JobResult(
            success=False,
            error=error_payload(ExecutionFailure(e)),
            duration_ms=(time.monotonic() - start_time) * 1000,
        )

    return JobResult(
        success=True,
        output=output,
        duration_ms=(time.monotonic() - start_time) * 1000,
    )
