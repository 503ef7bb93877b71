"""
API request and response models.
"""

from typing import Any

from pydantic import BaseModel, Field


class EnqueueJobRequest(BaseModel):
    """Request body for submitting a job."""

    payload: Any = Field(..., description="Opaque job payload")
    delay_ms: int | None = Field(
        default=None,
        ge=0,
        description="Delay before the job becomes eligible for processing",
    )


class EnqueueJobResponse(BaseModel):
    """Response after submitting a job."""

    job_id: str
    queue_name: str
    delayed: bool = False


class DrainRequest(BaseModel):
    """Request body for a drain trigger."""

    max_jobs: int | None = Field(default=None, ge=1, le=1000, alias="maxJobs")

    model_config = {"populate_by_name": True}


class MaintenanceResponse(BaseModel):
    """Generic response for maintenance triggers."""

    action: str
    affected: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class AcknowledgeResponse(BaseModel):
    """Response after acknowledging an alert."""

    alert_id: str
    acknowledged: bool


class ManualRetryResponse(BaseModel):
    """Response after an operator-requested retry."""

    job_id: str
    requeued: bool


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
