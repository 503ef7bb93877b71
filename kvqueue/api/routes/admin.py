"""
Operator routes: metrics, alerts, dead-letter inspection and cache stats.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from kvqueue.api.auth import verify_cron_secret
from kvqueue.api.dependencies import ServicesDep
from kvqueue.queue.engine import validate_queue_name
from kvqueue.types.api import AcknowledgeResponse, ManualRetryResponse
from kvqueue.types.cache import CacheStats
from kvqueue.types.dlq import DLQMetrics, DLQStats, FailedJob
from kvqueue.types.job import QueueStats
from kvqueue.types.monitor import (
    Alert,
    JobMetricsSnapshot,
    PerformanceMetrics,
    QueueMetrics,
)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_cron_secret)],
)


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# ============================================================================
# Metrics and alerts
# ============================================================================


@router.get("/metrics", response_model=JobMetricsSnapshot, summary="Job metrics")
async def job_metrics(services: ServicesDep) -> JobMetricsSnapshot:
    return await services.monitor.get_job_metrics()


@router.get("/performance", response_model=PerformanceMetrics, summary="Performance metrics")
async def performance_metrics(services: ServicesDep) -> PerformanceMetrics:
    return await services.monitor.get_performance_metrics()


@router.get("/queues/{queue_name}", response_model=QueueMetrics, summary="Queue metrics")
async def queue_metrics(queue_name: str, services: ServicesDep) -> QueueMetrics:
    """Metrics for one queue, including its DLQ backlog."""
    try:
        validate_queue_name(queue_name)
    except ValueError as e:
        raise _not_found(str(e)) from e
    return await services.monitor.get_queue_metrics(queue_name)


@router.get("/queues/{queue_name}/stats", response_model=QueueStats, summary="Queue key sizes")
async def queue_stats(queue_name: str, services: ServicesDep) -> QueueStats:
    """Raw sizes of the queue's pending, delayed, in-flight and malformed keys."""
    return await services.queue.get_queue_stats(queue_name)


@router.get("/alerts", response_model=list[Alert], summary="Recent alerts")
async def list_alerts(
    services: ServicesDep,
    limit: int = Query(default=20, ge=1, le=100),
) -> list[Alert]:
    return await services.monitor.get_alerts(limit)


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=AcknowledgeResponse,
    summary="Acknowledge an alert",
)
async def acknowledge_alert(alert_id: str, services: ServicesDep) -> AcknowledgeResponse:
    """
    Mark an alert as acknowledged.

    Raises:
        HTTPException: 404 if the alert does not exist or already expired.
    """
    if not await services.monitor.acknowledge_alert(alert_id):
        raise _not_found("Alert not found")
    return AcknowledgeResponse(alert_id=alert_id, acknowledged=True)


# ============================================================================
# Dead-letter queue
# ============================================================================


@router.get("/dlq/stats", response_model=DLQStats, summary="Dead-letter statistics")
async def dlq_stats(services: ServicesDep) -> DLQStats:
    return await services.dlq.get_stats()


@router.get("/dlq/metrics", response_model=DLQMetrics, summary="Dead-letter daily metrics")
async def dlq_metrics(
    services: ServicesDep,
    days: int = Query(default=7, ge=1, le=30),
) -> DLQMetrics:
    return await services.dlq.get_metrics(days)


@router.get(
    "/dlq/permanent",
    response_model=list[FailedJob],
    summary="Permanently failed jobs",
)
async def permanent_failures(
    services: ServicesDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[FailedJob]:
    return await services.dlq.list_permanent_failures(limit)


@router.get("/dlq/jobs/{job_id}", response_model=FailedJob, summary="Failed job details")
async def failed_job(job_id: str, services: ServicesDep) -> FailedJob:
    failed = await services.dlq.get_failed_job(job_id)
    if failed is None:
        raise _not_found("Failed job not found")
    return failed


@router.post(
    "/dlq/jobs/{job_id}/retry",
    response_model=ManualRetryResponse,
    summary="Retry a failed job now",
)
async def retry_failed_job(job_id: str, services: ServicesDep) -> ManualRetryResponse:
    """
    Requeue a failed job immediately.

    Permanently failed jobs are resubmitted as new jobs.

    Raises:
        HTTPException: 404 if the job is not tracked by the DLQ.
    """
    if await services.dlq.get_failed_job(job_id) is None:
        raise _not_found("Failed job not found")
    requeued = await services.dlq.manual_retry(job_id)
    return ManualRetryResponse(job_id=job_id, requeued=requeued)


# ============================================================================
# Cache
# ============================================================================


@router.get("/cache/stats", response_model=CacheStats, summary="Cache statistics")
async def cache_stats(services: ServicesDep) -> CacheStats:
    return await services.cache.get_stats()
