"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

from dbqueue.constants import (
    METRIC_CLAIMS_FAILED,
    METRIC_JOB_DURATION,
    METRIC_JOBS_BLOCKED,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DISPATCHED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_UNBLOCKED,
    METRIC_POLL_INTERVAL,
    METRIC_PROCESSES_PRUNED,
    METRIC_RECURRING_FIRED,
    METRIC_SEMAPHORES_EXPIRED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Enqueued, claimed and completed jobs
    - Job execution duration
    - Concurrency blocking and maintenance
    - Process pruning and orphaned claims
    - Recurring task firing
    - Current poll intervals
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue_name", "state"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["process_kind"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs completed",
            ["queue_name", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue_name", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.jobs_blocked = Counter(
            METRIC_JOBS_BLOCKED,
            "Total number of jobs blocked on a concurrency key",
            registry=self._registry,
        )

        self.jobs_unblocked = Counter(
            METRIC_JOBS_UNBLOCKED,
            "Total number of blocked jobs released by maintenance",
            registry=self._registry,
        )

        self.jobs_dispatched = Counter(
            METRIC_JOBS_DISPATCHED,
            "Total number of scheduled jobs promoted",
            registry=self._registry,
        )

        self.semaphores_expired = Counter(
            METRIC_SEMAPHORES_EXPIRED,
            "Total number of expired semaphores deleted",
            registry=self._registry,
        )

        self.processes_pruned = Counter(
            METRIC_PROCESSES_PRUNED,
            "Total number of dead processes pruned",
            ["kind"],
            registry=self._registry,
        )

        self.claims_failed = Counter(
            METRIC_CLAIMS_FAILED,
            "Total number of claimed executions failed because their process died",
            ["cause"],
            registry=self._registry,
        )

        self.recurring_fired = Counter(
            METRIC_RECURRING_FIRED,
            "Total number of recurring task ticks",
            ["task_key", "outcome"],
            registry=self._registry,
        )

        self.poll_interval = Gauge(
            METRIC_POLL_INTERVAL,
            "Current poll interval in seconds",
            ["process_name"],
            registry=self._registry,
        )

    def record_job_enqueued(self, queue_name: str, state: str) -> None:
        """Record a job enqueue and where it landed."""
        self.jobs_enqueued.labels(queue_name=queue_name, state=state).inc()
        if state == "blocked":
            self.jobs_blocked.inc()

    def record_jobs_claimed(self, process_kind: str, count: int = 1) -> None:
        """Record claimed jobs."""
        if count > 0:
            self.jobs_claimed.labels(process_kind=process_kind).inc(count)

    def record_job_completed(
        self,
        queue_name: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job completion."""
        self.jobs_completed.labels(queue_name=queue_name, status=status).inc()
        self.job_duration.labels(queue_name=queue_name, status=status).observe(
            duration_seconds
        )

    def record_concurrency_maintenance(self, expired: int, unblocked: int) -> None:
        """Record a concurrency maintenance run."""
        if expired:
            self.semaphores_expired.inc(expired)
        if unblocked:
            self.jobs_unblocked.inc(unblocked)

    def record_jobs_dispatched(self, count: int) -> None:
        if count:
            self.jobs_dispatched.inc(count)

    def record_process_pruned(self, kind: str) -> None:
        self.processes_pruned.labels(kind=kind).inc()

    def record_claims_failed(self, cause: str, count: int) -> None:
        if count:
            self.claims_failed.labels(cause=cause).inc(count)

    def record_recurring(self, task_key: str, outcome: str) -> None:
        """Record a recurring tick as enqueued or skipped."""
        self.recurring_fired.labels(task_key=task_key, outcome=outcome).inc()

    def update_poll_interval(self, process_name: str, interval: float) -> None:
        self.poll_interval.labels(process_name=process_name).set(interval)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
