"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class ExecutionState(StrEnum):
    """
    Job lifecycle states.

    Each job has exactly one state, backed by at most one execution row:
    - SCHEDULED -> READY | BLOCKED (due, admission decides)
    - BLOCKED -> READY (concurrency slot released)
    - READY -> CLAIMED (claimed by a worker)
    - CLAIMED -> FINISHED (success)
    - CLAIMED -> FAILED (job raised, or its process died)
    - FAILED -> READY | BLOCKED | SCHEDULED (retry)
    """

    SCHEDULED = "scheduled"
    BLOCKED = "blocked"
    READY = "ready"
    CLAIMED = "claimed"
    FAILED = "failed"
    FINISHED = "finished"


class ProcessKind(StrEnum):
    """Kinds of registered processes."""

    WORKER = "Worker"
    DISPATCHER = "Dispatcher"
    SCHEDULER = "Scheduler"
    SUPERVISOR = "Supervisor"


class SupervisorMode(StrEnum):
    """How a supervisor runs its children."""

    FORK = "fork"
    ASYNC = "async"


class SupervisorState(StrEnum):
    """
    Supervisor shutdown state machine.

    - RUNNING -> GRACEFUL_SHUTDOWN (TERM/INT)
    - RUNNING -> IMMEDIATE_SHUTDOWN (QUIT)
    - GRACEFUL_SHUTDOWN -> IMMEDIATE_SHUTDOWN (shutdown timeout elapsed)
    - *_SHUTDOWN -> TERMINATED (children gone, supervisor deregistered)
    """

    RUNNING = "running"
    GRACEFUL_SHUTDOWN = "graceful_shutdown"
    IMMEDIATE_SHUTDOWN = "immediate_shutdown"
    TERMINATED = "terminated"


class ConcurrencyConflict(StrEnum):
    """What happens to a job when its concurrency key has no free slot."""

    BLOCK = "block"
    DISCARD = "discard"


# Default values
DEFAULT_QUEUE_NAME = "default"
DEFAULT_PRIORITY = 0
ALL_QUEUES = "*"
DEFAULT_WORKER_THREADS = 3
DEFAULT_POLLING_INTERVAL_SECONDS = 0.1
DEFAULT_DISPATCHER_POLLING_INTERVAL_SECONDS = 1.0
DEFAULT_DISPATCH_BATCH_SIZE = 500
DEFAULT_CONCURRENCY_MAINTENANCE_INTERVAL_SECONDS = 600.0
DEFAULT_CLEAR_BATCH_SIZE = 500
PRUNE_BATCH_SIZE = 50
MAX_RESTART_DELAY_SECONDS = 60
# Sleep used by a worker whose pool is full; completions wake it earlier.
FULL_POOL_SLEEP_SECONDS = 600.0
# Exit status of a child told to quit immediately; the supervisor treats it as a crash.
IMMEDIATE_EXIT_STATUS = 1

# Metrics names
METRIC_JOBS_ENQUEUED = "dbqueue_jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "dbqueue_jobs_claimed_total"
METRIC_JOBS_COMPLETED = "dbqueue_jobs_completed_total"
METRIC_JOB_DURATION = "dbqueue_job_duration_seconds"
METRIC_JOBS_BLOCKED = "dbqueue_jobs_blocked_total"
METRIC_JOBS_UNBLOCKED = "dbqueue_jobs_unblocked_total"
METRIC_JOBS_DISPATCHED = "dbqueue_jobs_dispatched_total"
METRIC_SEMAPHORES_EXPIRED = "dbqueue_semaphores_expired_total"
METRIC_PROCESSES_PRUNED = "dbqueue_processes_pruned_total"
METRIC_CLAIMS_FAILED = "dbqueue_orphaned_claims_failed_total"
METRIC_RECURRING_FIRED = "dbqueue_recurring_tasks_total"
METRIC_POLL_INTERVAL = "dbqueue_poll_interval_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOBS = "claim_jobs"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_DISPATCH_SCHEDULED = "dispatch_scheduled"
SPAN_FIRE_RECURRING = "fire_recurring"
