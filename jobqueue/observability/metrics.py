"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_REPORTING_RACES,
    METRIC_STORE_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth per state
    - Job submissions, claims and outcomes
    - Job execution duration
    - Lease expiry and reporting races
    - Store errors
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs held in each queue state",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by dispatchers",
            ["worker_id"],
            registry=self._registry,
        )

        # outcome: completed, retried, dead_lettered
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts by outcome",
            ["job_type", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of in-flight jobs recovered after lease expiry",
            registry=self._registry,
        )

        self.reporting_races = Counter(
            METRIC_REPORTING_RACES,
            "Reports that found no matching in-flight job",
            ["operation"],
            registry=self._registry,
        )

        self.store_errors = Counter(
            METRIC_STORE_ERRORS,
            "Job store operations that failed to reach the store",
            ["operation"],
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(job_type=job_type).inc()

    def record_job_claimed(self, worker_id: str) -> None:
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_job_finished(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one attempt."""
        self.jobs_finished.labels(job_type=job_type, outcome=outcome).inc()
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_lease_expired(self, count: int = 1) -> None:
        self.lease_expired.inc(count)

    def record_reporting_race(self, operation: str) -> None:
        self.reporting_races.labels(operation=operation).inc()

    def record_store_error(self, operation: str) -> None:
        self.store_errors.labels(operation=operation).inc()

    def update_queue_depth(self, depths: dict[str, int]) -> None:
        """Update the queue depth gauge for every state."""
        for state, depth in depths.items():
            self.queue_depth.labels(state=state).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


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


def start_metrics_server(port: int) -> None:
    """
    Expose the default registry over HTTP for Prometheus to scrape.

    Args:
        port: Port to listen on.
    """
    setup_metrics()
    start_http_server(port)
