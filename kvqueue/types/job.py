"""
Job-related type definitions for internal use.
"""

from typing import Any

from pydantic import BaseModel, Field

from kvqueue.constants import JobStatus


class Job(BaseModel):
    """
    A unit of work as stored on the pending list.

    The serialized record is the only copy of the job that moves between
    keys; ownership transfers by moving this record, never by sharing it.
    """

    id: str
    queue_name: str
    payload: Any = None
    created_at: int
    execute_at: int | None = None
    retry_count: int = 0
    is_retry: bool = False


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by processors after handling a popped job.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


class JobStatusView(BaseModel):
    """Externally visible status of a job."""

    job_id: str
    queue_name: str
    status: JobStatus
    retry_count: int = 0
    created_at: int | None = None
    execute_at: int | None = None
    started_at: int | None = None
    completed_at: int | None = None
    failed_at: int | None = None
    result: Any = None
    error: str | None = None


class QueueStats(BaseModel):
    """Point-in-time sizes of a queue's keys."""

    queue_name: str
    pending: int = 0
    delayed: int = 0
    inflight: int = 0
    malformed: int = 0


class DrainResult(BaseModel):
    """Outcome of one drain pass."""

    processed: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: "DrainResult") -> "DrainResult":
        """Combine two drain results into a new one."""
        return DrainResult(
            processed=self.processed + other.processed,
            failed=self.failed + other.failed,
            errors=[*self.errors, *other.errors],
        )
