"""
Drain trigger routes, called by an external scheduler.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from kvqueue.api.auth import verify_cron_secret
from kvqueue.api.dependencies import ServicesDep
from kvqueue.types.api import DrainRequest
from kvqueue.types.job import DrainResult
from kvqueue.worker.handlers import get_processor

router = APIRouter(tags=["Drain"], dependencies=[Depends(verify_cron_secret)])


@router.post(
    "/queue/{queue_name}/drain",
    response_model=DrainResult,
    summary="Drain a queue",
    description="Process up to max_jobs ready jobs from a queue.",
)
async def drain_queue(
    queue_name: str,
    services: ServicesDep,
    request: DrainRequest | None = None,
) -> DrainResult:
    """
    Run one drain pass over a queue.

    Raises:
        HTTPException: 404 if no processor is registered for the queue.
    """
    processor = get_processor(queue_name)
    if processor is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No processor registered for queue: {queue_name}",
        )

    return await services.queue.drain(
        queue_name,
        processor,
        monitor=services.monitor,
        dlq=services.dlq,
        max_jobs=request.max_jobs if request else None,
    )


@router.post(
    "/dlq/drain",
    response_model=DrainResult,
    summary="Drain due retries",
    description="Requeue failed jobs whose retry time has come, or fail them permanently.",
)
async def drain_retries(services: ServicesDep) -> DrainResult:
    """Run one pass over the retry schedule."""
    return await services.dlq.drain_retries()
