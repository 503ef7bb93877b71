"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response

from kvqueue.api.dependencies import ServicesDep
from kvqueue.constants import HealthStatus
from kvqueue.observability.metrics import get_metrics
from kvqueue.types.monitor import HealthReport

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthReport,
    summary="Health check",
    description="Check the backing store, queue metrics and dead-letter queue.",
    responses={503: {"model": HealthReport}},
)
async def health_check(services: ServicesDep) -> Response:
    """
    Perform a health check.

    Returns 503 when the monitor reports the system unhealthy, so load
    balancers and uptime checks can act on the status code alone.
    """
    report = await services.monitor.health_check()
    status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Liveness probe; does not touch the store."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """Expose Prometheus metrics for this process."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
