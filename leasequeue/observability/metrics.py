"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from leasequeue.constants import (
    METRIC_CLAIM_CONFLICTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_BURIED,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_PUBLISHED,
    METRIC_JOBS_REANIMATED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Job publications, claims and claim races lost
    - Burials and reanimations
    - Job execution duration
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
            "Number of processable jobs",
            ["engine"],
            registry=self._registry,
        )

        self.jobs_published = Counter(
            METRIC_JOBS_PUBLISHED,
            "Total number of jobs published",
            ["engine", "name"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by a consumer",
            ["engine"],
            registry=self._registry,
        )

        # Another consumer updated the row between select and claim
        self.claim_conflicts = Counter(
            METRIC_CLAIM_CONFLICTS,
            "Total number of claim races lost",
            ["engine"],
            registry=self._registry,
        )

        self.jobs_buried = Counter(
            METRIC_JOBS_BURIED,
            "Total number of jobs buried",
            ["engine"],
            registry=self._registry,
        )

        self.jobs_reanimated = Counter(
            METRIC_JOBS_REANIMATED,
            "Total number of buried jobs reanimated",
            ["engine"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job callback duration in seconds",
            ["name", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0),
            registry=self._registry,
        )

    def record_published(self, engine: str, name: str) -> None:
        """Record a job publication."""
        self.jobs_published.labels(engine=engine, name=name).inc()

    def record_claimed(self, engine: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(engine=engine).inc()

    def record_claim_conflict(self, engine: str) -> None:
        """Record a lost claim race."""
        self.claim_conflicts.labels(engine=engine).inc()

    def record_buried(self, engine: str) -> None:
        """Record a burial."""
        self.jobs_buried.labels(engine=engine).inc()

    def record_reanimated(self, engine: str) -> None:
        """Record a reanimation."""
        self.jobs_reanimated.labels(engine=engine).inc()

    def record_job_completed(
        self,
        name: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record how long a job callback ran and how it ended."""
        self.job_duration.labels(name=name, outcome=outcome).observe(duration_seconds)

    def update_queue_depth(self, engine: str, depth: int) -> None:
        """Update the processable-job gauge."""
        self.queue_depth.labels(engine=engine).set(depth)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, also expose the metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
