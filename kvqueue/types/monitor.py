"""
Job monitor type definitions.
"""

from typing import Any

from pydantic import BaseModel, Field

from kvqueue.constants import AlertSeverity, AlertType, HealthStatus


class Alert(BaseModel):
    """A threshold breach raised by the job monitor."""

    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    queue: str | None = None
    value: float
    threshold: float
    timestamp: int
    acknowledged: bool = False


class LatencyPercentiles(BaseModel):
    """Latency distribution in milliseconds."""

    count: int = 0
    average: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


class QueueMetrics(BaseModel):
    """Metrics for a single queue."""

    queue_name: str
    pending: int = 0
    delayed: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    error_rate: float = 0.0
    throughput_last_hour: int = 0
    dlq_backlog: int = 0
    latency: LatencyPercentiles = Field(default_factory=LatencyPercentiles)


class JobMetricsSnapshot(BaseModel):
    """Metrics across every known queue."""

    queues: dict[str, QueueMetrics] = Field(default_factory=dict)
    total_processing: int = 0
    total_completed: int = 0
    total_failed: int = 0
    overall_error_rate: float = 0.0
    timestamp: int


class PerformanceMetrics(BaseModel):
    """Latency and throughput figures across queues."""

    latency: LatencyPercentiles = Field(default_factory=LatencyPercentiles)
    throughput: dict[str, int] = Field(default_factory=dict)
    error_rate: float = 0.0
    timestamp: int


class HealthReport(BaseModel):
    """Result of a health check."""

    status: HealthStatus
    checks: dict[str, bool] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)
    timestamp: int
