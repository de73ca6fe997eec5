"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobdispatch.constants import (
    METRIC_BATCH_FLUSHES,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_EXHAUSTED,
    METRIC_JOBS_PUBLISHED,
    METRIC_PERIODIC_CLAIMED,
    METRIC_QUEUE_DEPTH,
    METRIC_RETRIES_SCHEDULED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the dispatcher.

    Collects metrics for:
    - Queue depth per queue class
    - Job publications and completions
    - Job execution duration
    - Retries and exhausted jobs
    - Periodic occurrences and batch flushes
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
            "Number of messages in a queue class",
            ["queue_class"],
            registry=self._registry,
        )

        self.jobs_published = Counter(
            METRIC_JOBS_PUBLISHED,
            "Total number of jobs published",
            ["queue_class", "job_type"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job executions by outcome",
            ["queue_class", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue_class", "status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
            registry=self._registry,
        )

        self.retries_scheduled = Counter(
            METRIC_RETRIES_SCHEDULED,
            "Total number of retries scheduled",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_exhausted = Counter(
            METRIC_JOBS_EXHAUSTED,
            "Total number of messages moved to the failed queue",
            ["reason"],
            registry=self._registry,
        )

        self.periodic_claimed = Counter(
            METRIC_PERIODIC_CLAIMED,
            "Periodic occurrences claimed by this instance",
            ["periodic_id"],
            registry=self._registry,
        )

        self.batch_flushes = Counter(
            METRIC_BATCH_FLUSHES,
            "Total number of publish batch flushes",
            registry=self._registry,
        )

    def record_job_published(self, queue_class: str, job_type: str) -> None:
        """Record a job publication."""
        self.jobs_published.labels(queue_class=queue_class, job_type=job_type).inc()

    def record_job_completed(
        self,
        queue_class: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished execution."""
        self.jobs_completed.labels(queue_class=queue_class, status=status).inc()
        self.job_duration.labels(queue_class=queue_class, status=status).observe(
            duration_seconds
        )

    def record_retry_scheduled(self, job_type: str) -> None:
        self.retries_scheduled.labels(job_type=job_type).inc()

    def record_job_exhausted(self, reason: str) -> None:
        self.jobs_exhausted.labels(reason=reason).inc()

    def record_periodic_claimed(self, periodic_id: str) -> None:
        self.periodic_claimed.labels(periodic_id=periodic_id).inc()

    def record_batch_flush(self) -> None:
        self.batch_flushes.inc()

    def update_queue_depth(self, queue_class: str, depth: int) -> None:
        """Update queue depth for a queue class."""
        self.queue_depth.labels(queue_class=queue_class).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


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
