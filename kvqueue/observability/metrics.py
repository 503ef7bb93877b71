"""
Prometheus metrics for the queue, dead-letter, rate-limit and cache paths.

Values here are per-process and reset with every invocation; the durable
counters live in the backing store and are read through the job monitor.
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

from kvqueue.constants import (
    METRIC_ALERTS_RAISED,
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_CACHE_OPERATIONS,
    METRIC_DLQ_RETRIES,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_PROCESSED,
    METRIC_QUEUE_DEPTH,
    METRIC_RATE_LIMIT_DECISIONS,
    METRIC_STALLED_REQUEUED,
)

JOB_DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
API_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Holds every kvqueue Prometheus series.

    Components call the ``record_*`` helpers instead of touching the
    series directly so label names stay in one place. Tests pass a private
    ``CollectorRegistry`` to avoid duplicate registration.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self._registry = registry or REGISTRY
        reg = self._registry

        # Queue engine
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Pending jobs per queue, as of the last drain",
            ["queue"],
            registry=reg,
        )
        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED, "Jobs accepted by enqueue", ["queue", "delayed"], registry=reg
        )
        self.jobs_processed = Counter(
            METRIC_JOBS_PROCESSED,
            "Jobs run by a drain, by outcome",
            ["queue", "status"],
            registry=reg,
        )
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Wall time of one processor call",
            ["queue", "status"],
            buckets=JOB_DURATION_BUCKETS,
            registry=reg,
        )
        self.stalled_requeued = Counter(
            METRIC_STALLED_REQUEUED,
            "In-flight jobs pushed back after the visibility timeout",
            ["queue"],
            registry=reg,
        )

        # Dead-letter queue and monitor
        self.dlq_retries = Counter(
            METRIC_DLQ_RETRIES, "Retry scheduling decisions", ["queue", "outcome"], registry=reg
        )
        self.alerts_raised = Counter(
            METRIC_ALERTS_RAISED, "Threshold alerts raised", ["type", "severity"], registry=reg
        )

        # Edge components
        self.rate_limit_decisions = Counter(
            METRIC_RATE_LIMIT_DECISIONS, "Rate limiter verdicts", ["decision"], registry=reg
        )
        self.cache_operations = Counter(
            METRIC_CACHE_OPERATIONS, "Tagged cache calls by kind", ["operation"], registry=reg
        )

        # HTTP surface
        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "API requests by route template",
            ["method", "endpoint", "status"],
            registry=reg,
        )
        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=API_LATENCY_BUCKETS,
            registry=reg,
        )

    def record_job_enqueued(self, queue: str, delayed: bool) -> None:
        self.jobs_enqueued.labels(queue=queue, delayed="true" if delayed else "false").inc()

    def record_job_processed(self, queue: str, status: str, duration_seconds: float) -> None:
        """Count one processor run and observe how long it took."""
        self.jobs_processed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

    def record_dlq_retry(self, queue: str, outcome: str) -> None:
        """``outcome`` is one of retried, permanent_failure or completed."""
        self.dlq_retries.labels(queue=queue, outcome=outcome).inc()

    def record_stalled_requeued(self, queue: str, count: int) -> None:
        self.stalled_requeued.labels(queue=queue).inc(count)

    def record_rate_limit(self, decision: str) -> None:
        """``decision`` is one of allowed, denied, blocked or fail_open."""
        self.rate_limit_decisions.labels(decision=decision).inc()

    def record_cache_operation(self, operation: str) -> None:
        self.cache_operations.labels(operation=operation).inc()

    def record_alert(self, alert_type: str, severity: str) -> None:
        self.alerts_raised.labels(type=alert_type, severity=severity).inc()

    def update_queue_depth(self, queue: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue).set(depth)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """
        Count and time one API request.

        ``endpoint`` must be the route template so job ids do not explode
        label cardinality.
        """
        self.api_requests.labels(method=method, endpoint=endpoint, status=str(status)).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(duration_seconds)

    def get_metrics(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """Create the process-wide collector once and return it."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Return the process-wide collector, creating it on first use."""
    return _metrics if _metrics is not None else setup_metrics()
