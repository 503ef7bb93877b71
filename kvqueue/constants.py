"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Queue-side job lifecycle states.

    State transitions:
    - DELAYED -> QUEUED (scheduled time elapsed, promoted)
    - QUEUED -> PROCESSING (popped by a drain)
    - PROCESSING -> COMPLETED (processor succeeded)
    - PROCESSING -> FAILED (processor failed, handed to the DLQ)
    - PROCESSING -> QUEUED (visibility timeout expired, requeued)
    - FAILED -> QUEUED (retry pushed back by the DLQ)
    """

    DELAYED = "delayed"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureStatus(StrEnum):
    """
    Dead-letter lifecycle states.

    State transitions:
    - FAILED -> SCHEDULED_RETRY (retry delay computed)
    - FAILED -> PERMANENT_FAILURE (non-retryable error)
    - SCHEDULED_RETRY -> RETRYING (retry pushed back onto the queue)
    - SCHEDULED_RETRY -> PERMANENT_FAILURE (retry budget exhausted)
    - RETRYING -> COMPLETED (retry succeeded, leaves DLQ tracking)
    - RETRYING -> FAILED (retry failed again)
    """

    FAILED = "failed"
    SCHEDULED_RETRY = "scheduled-retry"
    RETRYING = "retrying"
    COMPLETED = "completed"
    PERMANENT_FAILURE = "permanent-failure"


class AlertType(StrEnum):
    """Kinds of threshold breach raised by the job monitor."""

    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    QUEUE_SIZE = "queue_size"
    DLQ_SIZE = "dlq_size"
    THROUGHPUT = "throughput"


class AlertSeverity(StrEnum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HealthStatus(StrEnum):
    """Aggregate health of the backing store and subsystems."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CachePriority(StrEnum):
    """Cache entry priority levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class UserTier(StrEnum):
    """Subscription tiers used to scale rate limits."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Default values
DEFAULT_CACHE_PRIORITY = CachePriority.NORMAL
JOB_COMPLETED_TTL_SECONDS = 24 * 60 * 60
JOB_FAILED_TTL_SECONDS = 3 * 24 * 60 * 60
JOB_METADATA_TTL_SECONDS = 60 * 60
PROMOTE_CLAIM_TTL_SECONDS = 60
LATENCY_SAMPLE_LIMIT = 1000
LATENCY_SAMPLE_TTL_SECONDS = 24 * 60 * 60
THROUGHPUT_HOUR_TTL_SECONDS = 7 * 24 * 60 * 60
THROUGHPUT_DAY_TTL_SECONDS = 30 * 24 * 60 * 60
ALERT_TTL_SECONDS = 7 * 24 * 60 * 60
ALERT_RECENT_LIMIT = 100
DLQ_METRICS_TTL_SECONDS = 30 * 24 * 60 * 60
MIN_RETRY_DELAY_MS = 1000
RETRY_JITTER_FRACTION = 0.25

# Store key prefixes
KEY_QUEUE_REGISTRY = "queue:registry"
KEY_JOB_PREFIX = "job:"
KEY_FAILED_JOB_PREFIX = "failed-job:"
KEY_RETRY_SCHEDULE = "retry-job:schedule"
KEY_DLQ_FAILED_AT = "dlq:failed-at"
KEY_DLQ_PERMANENT = "dlq:permanent-failures"
KEY_DLQ_METRICS_PREFIX = "dlq-metrics:"
KEY_JOB_METRICS_PREFIX = "job-metrics:"
KEY_PROCESSING_PREFIX = "processing:"
KEY_LATENCY_PREFIX = "latency-samples:"
KEY_ALERT_PREFIX = "alerts:"
KEY_ALERTS_RECENT = "alerts:recent"
KEY_RATE_LIMIT_PREFIX = "rate_limit:"
KEY_BURST_LIMIT_PREFIX = "burst_limit:"
KEY_BLOCKED_PREFIX = "blocked:"
KEY_CACHE_PREFIX = "cache:"
KEY_CACHE_PRIORITY_PREFIX = "cache-index:priority:"
KEY_CACHE_TAG_PREFIX = "cache-tags:"
KEY_CACHE_TAG_REGISTRY = "cache-tags:registry"
KEY_CACHE_STATS_OPERATIONS = "cache-stats:operations"
KEY_CACHE_STATS_SIZE = "cache-stats:size"
KEY_CACHE_STATS_CLEANUP = "cache-stats:cleanup"

# API constants
API_V1_PREFIX = "/v1"
RATE_LIMIT_HEADER_LIMIT = "X-RateLimit-Limit"
RATE_LIMIT_HEADER_REMAINING = "X-RateLimit-Remaining"
RATE_LIMIT_HEADER_RESET = "X-RateLimit-Reset"
API_KEY_HEADER = "X-API-Key"

# Metrics names
METRIC_QUEUE_DEPTH = "kvqueue_queue_depth"
METRIC_JOBS_ENQUEUED = "kvqueue_jobs_enqueued_total"
METRIC_JOBS_PROCESSED = "kvqueue_jobs_processed_total"
METRIC_JOB_DURATION = "kvqueue_job_duration_seconds"
METRIC_DLQ_RETRIES = "kvqueue_dlq_retries_total"
METRIC_STALLED_REQUEUED = "kvqueue_stalled_requeued_total"
METRIC_RATE_LIMIT_DECISIONS = "kvqueue_rate_limit_decisions_total"
METRIC_CACHE_OPERATIONS = "kvqueue_cache_operations_total"
METRIC_ALERTS_RAISED = "kvqueue_alerts_raised_total"
METRIC_API_REQUESTS = "kvqueue_api_requests_total"
METRIC_API_LATENCY = "kvqueue_api_request_latency_seconds"

# Trace span names
SPAN_ENQUEUE = "enqueue_job"
SPAN_DRAIN_QUEUE = "drain_queue"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_DRAIN_RETRIES = "drain_retries"
SPAN_REQUEUE_STALLED = "requeue_stalled"
