"""
Type definitions for the queue toolkit.
Contains input/output type definitions for all components, grouped by module.
"""

from kvqueue.types.api import (
    AcknowledgeResponse,
    DrainRequest,
    EnqueueJobRequest,
    EnqueueJobResponse,
    ErrorResponse,
    MaintenanceResponse,
    ManualRetryResponse,
)
from kvqueue.types.cache import CacheEntry, CacheStats, ReconcileResult
from kvqueue.types.dlq import DLQMetrics, DLQStats, FailedJob, RetryConfig
from kvqueue.types.job import DrainResult, Job, JobResult, JobStatusView, QueueStats
from kvqueue.types.monitor import (
    Alert,
    HealthReport,
    JobMetricsSnapshot,
    LatencyPercentiles,
    PerformanceMetrics,
    QueueMetrics,
)
from kvqueue.types.ratelimit import RateLimitConfig, RateLimitResult

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "DrainRequest",
    "MaintenanceResponse",
    "AcknowledgeResponse",
    "ManualRetryResponse",
    "ErrorResponse",
    # Job types
    "Job",
    "JobResult",
    "JobStatusView",
    "QueueStats",
    "DrainResult",
    # Dead-letter types
    "RetryConfig",
    "FailedJob",
    "DLQStats",
    "DLQMetrics",
    # Monitor types
    "Alert",
    "LatencyPercentiles",
    "QueueMetrics",
    "JobMetricsSnapshot",
    "PerformanceMetrics",
    "HealthReport",
    # Rate limit types
    "RateLimitConfig",
    "RateLimitResult",
    # Cache types
    "CacheEntry",
    "CacheStats",
    "ReconcileResult",
]
