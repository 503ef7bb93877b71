"""
Job submission and status routes.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from kvqueue.api.dependencies import ServicesDep
from kvqueue.api.rate_limit import rate_limit
from kvqueue.constants import API_V1_PREFIX
from kvqueue.store.client import StoreError
from kvqueue.types.api import EnqueueJobRequest, EnqueueJobResponse
from kvqueue.types.job import JobStatusView

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_V1_PREFIX, tags=["Jobs"])


@router.post(
    "/queues/{queue_name}/jobs",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a job",
    description="Add a job to a queue, optionally delayed. Processing happens on a later drain.",
    dependencies=[Depends(rate_limit("api"))],
)
async def enqueue_job(
    queue_name: str,
    request: EnqueueJobRequest,
    services: ServicesDep,
) -> EnqueueJobResponse:
    """
    Submit a job.

    Args:
        queue_name: Target queue.
        request: Payload and optional delay.
        services: Request-scoped components.

    Returns:
        EnqueueJobResponse with the new job id.

    Raises:
        HTTPException: 422 for an invalid queue name, 503 if the store
            could not take the job.
    """
    try:
        job_id = await services.queue.enqueue(queue_name, request.payload, request.delay_ms)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    except StoreError as e:
        logger.error("Enqueue failed", extra={"queue": queue_name, "error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job store unavailable",
        ) from e

    return EnqueueJobResponse(
        job_id=job_id,
        queue_name=queue_name,
        delayed=bool(request.delay_ms),
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusView,
    summary="Get job status",
    description="Get the current status of a job. Finished jobs expire after a while.",
)
async def get_job(job_id: str, services: ServicesDep) -> JobStatusView:
    """
    Get job status by ID.

    Raises:
        HTTPException: 404 if the job is unknown or already expired.
    """
    view = await services.queue.get_status(job_id)
    if view is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return view
