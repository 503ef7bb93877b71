"""
Dead-letter queue type definitions.
"""

from typing import Any

from pydantic import BaseModel, Field

from kvqueue.constants import FailureStatus


class RetryConfig(BaseModel):
    """Retry policy applied to a failed job."""

    max_retries: int = 3
    base_delay_ms: int = 30_000
    max_delay_ms: int = 300_000
    exponential_backoff: bool = True
    jitter: bool = True


class FailedJob(BaseModel):
    """A job tracked by the dead-letter queue."""

    id: str
    original_queue: str
    payload: Any = None
    error: str
    failed_at: int
    retry_count: int = 0
    max_retries: int = 3
    created_at: int
    last_retry_at: int | None = None
    next_retry_at: int | None = None
    status: FailureStatus = FailureStatus.FAILED
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DLQStats(BaseModel):
    """Current dead-letter queue sizes."""

    scheduled_retries: int = 0
    permanent_failures: int = 0
    tracked: int = 0
    by_queue: dict[str, int] = Field(default_factory=dict)


class DLQMetrics(BaseModel):
    """Daily dead-letter activity counters."""

    daily: dict[str, dict[str, int]] = Field(default_factory=dict)
    summary: dict[str, int] = Field(default_factory=dict)
