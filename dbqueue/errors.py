"""
Exception hierarchy for the job queue.

Job-body failures and dead-process causes end up serialized in
failed_executions; configuration errors are raised at startup before
any process loop runs.
"""

import traceback
from datetime import datetime
from typing import Any


class DBQueueError(Exception):
    """Base class for all job queue errors."""


class ExecutionFailure(DBQueueError):
    """A job body raised while executing a claimed job."""

    def __init__(self, exception: BaseException):
        self.exception = exception
        super().__init__(f"{type(exception).__name__}: {exception}")


class UnknownJobTypeError(DBQueueError):
    """No handler is registered for a claimed job's type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class ProcessMissingError(DBQueueError):
    """The process holding a claim no longer exists."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message or "The process that was running this job no longer exists"
        )


class ProcessPrunedError(ProcessMissingError):
    """The process holding a claim stopped heartbeating and was pruned."""

    def __init__(self, last_heartbeat_at: datetime):
        self.last_heartbeat_at = last_heartbeat_at
        super().__init__(
            f"Process was found dead and pruned (last heartbeat at: {last_heartbeat_at})"
        )


class ProcessExitError(ProcessMissingError):
    """A forked child holding claims exited unexpectedly."""

    def __init__(self, pid: int, exit_code: int | None = None, signal: int | None = None):
        self.pid = pid
        self.exit_code = exit_code
        self.signal = signal

        message = f"Process pid={pid} exited unexpectedly."
        if exit_code is not None:
            message += f" Exited with status {exit_code}."
        if signal is not None:
            message += f" Received unhandled signal {signal}."
        super().__init__(message)


class AlreadyRecordedError(DBQueueError):
    """A recurring task tick was already fired by another scheduler."""

    def __init__(self, task_key: str, run_at: datetime):
        self.task_key = task_key
        self.run_at = run_at
        super().__init__(f"Recurring task {task_key} already enqueued for {run_at}")


class ConfigurationError(DBQueueError):
    """Invalid process or polling configuration."""


class InvalidIntervalError(ConfigurationError):
    pass


class InvalidFactorError(ConfigurationError):
    pass


class InvalidWindowSizeError(ConfigurationError):
    pass


class InconsistentConfigurationError(ConfigurationError):
    pass


class InvalidScheduleError(ConfigurationError):
    """A recurring task schedule could not be parsed."""


class UndiscardableError(DBQueueError):
    """A claimed job is in progress and cannot be discarded."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is claimed and cannot be discarded")


def error_payload(exception: BaseException) -> dict[str, Any]:
    """
    Serialize an exception for failed_executions.error.

    Args:
        exception: The exception to record.

    Returns:
        Dictionary with exception_class, message and backtrace.
    """
    if isinstance(exception, ExecutionFailure):
        exception = exception.exception
    return {
        "exception_class": type(exception).__name__,
        "message": str(exception),
        "backtrace": [
            line.rstrip("\n")
            for line in traceback.format_tb(exception.__traceback__)
        ],
    }
