"""
Maintenance trigger routes.
"""

from fastapi import APIRouter, Depends, Query

from kvqueue.api.auth import verify_cron_secret
from kvqueue.api.dependencies import ServicesDep
from kvqueue.reaper.main import Reaper
from kvqueue.types.api import MaintenanceResponse

router = APIRouter(
    prefix="/maintenance",
    tags=["Maintenance"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post(
    "/requeue-stalled",
    response_model=MaintenanceResponse,
    summary="Requeue stalled jobs",
)
async def requeue_stalled(services: ServicesDep) -> MaintenanceResponse:
    """Requeue in-flight jobs past their visibility deadline on every queue."""
    requeued = await Reaper(services).requeue_stalled()
    return MaintenanceResponse(action="requeue-stalled", affected=requeued)


@router.post(
    "/dlq-purge",
    response_model=MaintenanceResponse,
    summary="Purge old dead-letter records",
)
async def purge_dlq(
    services: ServicesDep,
    days: int | None = Query(default=None, ge=0, le=365),
) -> MaintenanceResponse:
    """Delete failed-job records older than ``days`` (default: retention setting)."""
    purged = await services.dlq.purge_older_than(days)
    return MaintenanceResponse(action="dlq-purge", affected=purged, details={"days": days})


@router.post(
    "/cache-reconcile",
    response_model=MaintenanceResponse,
    summary="Reconcile cache indexes",
)
async def reconcile_cache(services: ServicesDep) -> MaintenanceResponse:
    """Drop empty tag indexes from the cache."""
    result = await services.cache.reconcile()
    return MaintenanceResponse(
        action="cache-reconcile",
        affected=result.empty_tags_removed,
        details=result.model_dump(),
    )
