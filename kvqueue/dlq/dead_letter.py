"""
Dead-letter queue: failure records, retry scheduling and escalation.

Key layout:

- ``failed-job:{id}``          hash with the FailedJob record (``data``),
                               its ``status`` and ``last_updated``
- ``retry-job:schedule``       sorted set, job id scored by next retry (ms)
- ``dlq:{queue}``              set of job ids still tracked for a queue
- ``dlq:failed-at``            sorted set, job id scored by last failure (ms)
- ``dlq:permanent-failures``   list of job ids awaiting an operator
- ``dlq-metrics:daily:{date}`` hash of ``{queue}:{action}`` counters

Every status change goes through the failure transition table, so a record
can only move along ``failed -> scheduled-retry -> retrying -> ...``.
"""

import logging
import random
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from kvqueue.config import get_settings
from kvqueue.constants import (
    DLQ_METRICS_TTL_SECONDS,
    KEY_DLQ_FAILED_AT,
    KEY_DLQ_METRICS_PREFIX,
    KEY_DLQ_PERMANENT,
    KEY_FAILED_JOB_PREFIX,
    KEY_RETRY_SCHEDULE,
    MIN_RETRY_DELAY_MS,
    PROMOTE_CLAIM_TTL_SECONDS,
    RETRY_JITTER_FRACTION,
    SPAN_DRAIN_RETRIES,
    FailureStatus,
    JobStatus,
)
from kvqueue.observability.metrics import get_metrics
from kvqueue.observability.tracing import get_tracer
from kvqueue.queue.engine import QueueEngine
from kvqueue.queue.lifecycle import (
    InvalidTransitionError,
    advance_failure,
    parse_failure_status,
)
from kvqueue.store.client import StoreClient, StoreError
from kvqueue.store.serialization import DeserializationError, deserialize, serialize
from kvqueue.types.dlq import DLQMetrics, DLQStats, FailedJob, RetryConfig
from kvqueue.types.job import DrainResult, Job

logger = logging.getLogger(__name__)

# Status walks used to close out a record that is resolved outside the
# normal retry path (a duplicate delivery succeeding, for instance).
_PATHS_TO_COMPLETED: dict[FailureStatus, list[FailureStatus]] = {
    FailureStatus.FAILED: [
        FailureStatus.SCHEDULED_RETRY,
        FailureStatus.RETRYING,
        FailureStatus.COMPLETED,
    ],
    FailureStatus.SCHEDULED_RETRY: [FailureStatus.RETRYING, FailureStatus.COMPLETED],
    FailureStatus.RETRYING: [FailureStatus.COMPLETED],
}


def compute_retry_delay(
    retry_count: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> int:
    """
    Compute the delay before the next retry.

    ``min(base * 2^retry_count, max)`` with exponential backoff, then a
    multiplicative jitter of up to 25% either way, floored at one second.

    Args:
        retry_count: Retries already made.
        config: Retry policy.
        rand: Uniform [0, 1) source, injectable for tests.

    Returns:
        Delay in whole milliseconds.
    """
    delay = float(config.base_delay_ms)

    if config.exponential_backoff:
        delay = float(min(config.base_delay_ms * 2**retry_count, config.max_delay_ms))

    if config.jitter:
        jitter = (rand() - 0.5) * 2 * RETRY_JITTER_FRACTION * delay
        delay = max(MIN_RETRY_DELAY_MS, delay + jitter)

    return round(delay)


def failed_job_key(job_id: str) -> str:
    return f"{KEY_FAILED_JOB_PREFIX}{job_id}"


def backlog_key(queue_name: str) -> str:
    return f"dlq:{queue_name}"


def default_retry_config() -> RetryConfig:
    """Retry policy from application settings."""
    settings = get_settings()
    return RetryConfig(
        max_retries=settings.dlq_max_retries,
        base_delay_ms=settings.dlq_base_delay_ms,
        max_delay_ms=settings.dlq_max_delay_ms,
        exponential_backoff=settings.dlq_exponential_backoff,
        jitter=settings.dlq_jitter,
    )


class DeadLetterQueue:
    """
    Tracks failed jobs until they succeed on retry or fail permanently.

    Public methods are best-effort: store errors are logged and a safe
    default is returned, so a failing DLQ never fails the drain calling it.
    ``collect_stats`` and ``backlog`` are the exceptions, for callers that
    need to see the error (health checks, alert evaluation).
    """

    def __init__(
        self,
        store: StoreClient,
        queue_engine: QueueEngine,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        default_config: RetryConfig | None = None,
    ):
        """
        Initialize the dead-letter queue.

        Args:
            store: Open store client.
            queue_engine: Engine used to push retries back onto queues.
            clock: Returns the current time in seconds.
            rng: Uniform [0, 1) source for retry jitter.
            default_config: Retry policy when a caller passes none.
        """
        self.store = store
        self.queue_engine = queue_engine
        self._clock = clock
        self._rng = rng
        self.default_config = default_config or default_retry_config()
        self._metrics = get_metrics()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ========================================================================
    # Record storage
    # ========================================================================

    async def _load(self, job_id: str) -> FailedJob | None:
        fields = await self.store.hgetall(failed_job_key(job_id))
        if not fields:
            return None

        decoded = deserialize(fields.get("data"), FailedJob)
        if isinstance(decoded, DeserializationError):
            logger.warning(
                "Malformed failed-job record",
                extra={"job_id": job_id, "error": decoded.error},
            )
            return None

        failed = decoded.value
        # The status field is written on its own and may be newer than data
        status = parse_failure_status(fields.get("status"))
        if status is not None and status != failed.status:
            failed = failed.model_copy(update={"status": status})
        return failed

    async def _save(self, failed: FailedJob) -> None:
        await self.store.hset(
            failed_job_key(failed.id),
            {
                "data": serialize(failed),
                "status": failed.status,
                "last_updated": self.now_ms(),
            },
        )

    async def _transition(self, failed: FailedJob, target: FailureStatus, **changes) -> FailedJob:
        advance_failure(failed.status, target)
        updated = failed.model_copy(update={"status": target, **changes})
        await self._save(updated)
        return updated

    # ========================================================================
    # Failures and scheduling
    # ========================================================================

    async def record_failure(
        self,
        job: Job,
        error: str,
        retry_config: RetryConfig | None = None,
        *,
        retryable: bool = True,
    ) -> FailedJob | None:
        """
        Record a processor failure and schedule the next retry.

        A first failure creates the record with the job's retry count; a
        failed retry updates the existing record and keeps its count. The
        payload is stored verbatim.

        Args:
            job: The job that failed.
            error: Error message from the processor.
            retry_config: Retry policy; defaults to the DLQ default.
            retryable: False escalates straight to permanent failure.

        Returns:
            The stored record, or None if it could not be stored.
        """
        config = retry_config or self.default_config
        now = self.now_ms()

        try:
            existing = await self._load(job.id)

            if existing is None:
                failed = FailedJob(
                    id=job.id,
                    original_queue=job.queue_name,
                    payload=job.payload,
                    error=error,
                    failed_at=now,
                    retry_count=job.retry_count,
                    max_retries=config.max_retries,
                    created_at=job.created_at,
                    retry_config=config,
                )
                await self._save(failed)
            elif existing.status == FailureStatus.RETRYING:
                failed = await self._transition(
                    existing,
                    FailureStatus.FAILED,
                    error=error,
                    failed_at=now,
                    retry_count=max(existing.retry_count, job.retry_count),
                )
            elif existing.status == FailureStatus.FAILED:
                # A previous attempt stored the record but never scheduled it
                failed = existing
            else:
                logger.info(
                    "Ignoring failure of a job already tracked by the DLQ",
                    extra={"job_id": job.id, "status": existing.status},
                )
                return existing

            await self.store.sadd(backlog_key(job.queue_name), job.id)
            await self.store.zadd(KEY_DLQ_FAILED_AT, {job.id: now})
            await self._update_metrics(job.queue_name, "failed")

            logger.warning(
                "Job recorded in dead-letter queue",
                extra={
                    "job_id": job.id,
                    "queue": job.queue_name,
                    "retry_count": failed.retry_count,
                    "error": error,
                },
            )

            if not retryable:
                return await self._move_to_permanent(failed)

            delay = await self.schedule_retry(job.id, failed.retry_count, config)
            if delay is None:
                return failed
            return await self._load(job.id) or failed

        except (StoreError, InvalidTransitionError) as e:
            logger.error(
                "Failed to record job failure",
                extra={"job_id": job.id, "queue": job.queue_name, "error": str(e)},
            )
            return None

    async def schedule_retry(
        self,
        job_id: str,
        retry_count: int,
        retry_config: RetryConfig | None = None,
    ) -> int | None:
        """
        Schedule the next retry of a failed job.

        The schedule entry is written before the record's status so that a
        crash in between leaves a due entry the next drain can still act on.

        Returns:
            The delay in milliseconds, or None on error.
        """
        try:
            failed = await self._load(job_id)
            config = retry_config or (failed.retry_config if failed else self.default_config)
            delay = compute_retry_delay(retry_count, config, self._rng)
            next_retry_at = self.now_ms() + delay

            await self.store.zadd(KEY_RETRY_SCHEDULE, {job_id: next_retry_at})

            if failed is not None:
                await self._transition(
                    failed,
                    FailureStatus.SCHEDULED_RETRY,
                    next_retry_at=next_retry_at,
                )

            logger.info(
                "Retry scheduled",
                extra={"job_id": job_id, "retry_count": retry_count, "delay_ms": delay},
            )
            return delay

        except (StoreError, InvalidTransitionError) as e:
            logger.error(
                "Failed to schedule retry",
                extra={"job_id": job_id, "error": str(e)},
            )
            return None

    # ========================================================================
    # Retry drain
    # ========================================================================

    async def drain_retries(self, batch_size: int | None = None) -> DrainResult:
        """
        Push due retries back onto their queues.

        Jobs whose retry budget is spent are escalated to permanent failure
        instead. Each job is handled on its own so one error does not stop
        the batch.

        Returns:
            DrainResult: ``processed`` counts jobs retried or escalated,
            ``failed`` counts jobs that raised, ``errors`` lists why.
        """
        batch_size = batch_size or get_settings().dlq_drain_batch_size
        result = DrainResult()

        with get_tracer().start_as_current_span(SPAN_DRAIN_RETRIES) as span:
            try:
                due = await self.store.zrangebyscore(
                    KEY_RETRY_SCHEDULE, "-inf", self.now_ms(), count=batch_size
                )
            except StoreError as e:
                logger.error("Failed to read retry schedule", extra={"error": str(e)})
                result.errors.append(f"schedule: {e}")
                return result

            for job_id in due:
                try:
                    if await self._retry_one(job_id):
                        result.processed += 1
                except Exception as e:
                    logger.exception(
                        "Retry failed",
                        extra={"job_id": job_id, "error": str(e)},
                    )
                    result.failed += 1
                    result.errors.append(f"{job_id}: {e}")

            span.set_attribute("processed", result.processed)
            span.set_attribute("failed", result.failed)

        if result.processed or result.failed:
            logger.info(
                f"Processed {result.processed} retry jobs, {result.failed} failed"
            )
        return result

    async def _retry_one(self, job_id: str) -> bool:
        failed = await self._load(job_id)
        if failed is None:
            await self.store.zrem(KEY_RETRY_SCHEDULE, job_id)
            return False

        if failed.status == FailureStatus.FAILED:
            failed = await self._transition(failed, FailureStatus.SCHEDULED_RETRY)

        if failed.status != FailureStatus.SCHEDULED_RETRY:
            # Already picked up by another drain, or resolved
            await self.store.zrem(KEY_RETRY_SCHEDULE, job_id)
            return False

        if failed.retry_count >= failed.max_retries:
            await self._move_to_permanent(failed)
            return True

        claimed = await self.store.set(
            f"{failed_job_key(job_id)}:retry:{failed.retry_count}",
            self.now_ms(),
            ex=PROMOTE_CLAIM_TTL_SECONDS,
            nx=True,
        )
        if not claimed:
            return False

        now = self.now_ms()
        retry_count = failed.retry_count + 1
        job = Job(
            id=failed.id,
            queue_name=failed.original_queue,
            payload=failed.payload,
            created_at=failed.created_at,
            retry_count=retry_count,
            is_retry=True,
        )

        try:
            await self.queue_engine.requeue(job)
        except InvalidTransitionError as e:
            if e.current == JobStatus.COMPLETED:
                # A duplicate delivery already completed this job
                await self._complete(failed)
                return True
            # Requeued by an earlier pass that failed before recording it
            logger.info(
                "Retry already on the queue",
                extra={"job_id": job_id, "job_status": str(e.current)},
            )

        await self._transition(
            failed,
            FailureStatus.RETRYING,
            retry_count=retry_count,
            last_retry_at=now,
            next_retry_at=None,
        )
        await self.store.zrem(KEY_RETRY_SCHEDULE, job_id)
        await self._update_metrics(failed.original_queue, "retried")
        self._metrics.record_dlq_retry(failed.original_queue, "retried")

        logger.info(
            f"Job retried (attempt {retry_count}/{failed.max_retries})",
            extra={"job_id": job_id, "queue": failed.original_queue},
        )
        return True

    async def _move_to_permanent(self, failed: FailedJob) -> FailedJob:
        updated = await self._transition(
            failed, FailureStatus.PERMANENT_FAILURE, next_retry_at=None
        )
        await self.store.zrem(KEY_RETRY_SCHEDULE, failed.id)
        await self.store.lpush(KEY_DLQ_PERMANENT, failed.id)
        await self._update_metrics(failed.original_queue, "permanent-failure")
        self._metrics.record_dlq_retry(failed.original_queue, "permanent_failure")

        logger.error(
            f"Job moved to permanent failure after {failed.retry_count} retries",
            extra={"job_id": failed.id, "queue": failed.original_queue, "error": failed.error},
        )
        return updated

    async def _complete(self, failed: FailedJob) -> FailedJob:
        for target in _PATHS_TO_COMPLETED.get(failed.status, []):
            failed = await self._transition(failed, target, next_retry_at=None)
        await self.store.zrem(KEY_RETRY_SCHEDULE, failed.id)
        await self.store.srem(backlog_key(failed.original_queue), failed.id)
        await self._update_metrics(failed.original_queue, "completed")
        self._metrics.record_dlq_retry(failed.original_queue, "completed")
        return failed

    async def mark_completed(self, job_id: str) -> bool:
        """
        Close out a job whose retry succeeded.

        Returns:
            True if the job is no longer tracked as failing.
        """
        try:
            failed = await self._load(job_id)
            if failed is None:
                return False
            if failed.status == FailureStatus.COMPLETED:
                return True
            if failed.status == FailureStatus.PERMANENT_FAILURE:
                return False

            await self._complete(failed)
            logger.info(
                "Retried job completed",
                extra={"job_id": job_id, "retry_count": failed.retry_count},
            )
            return True
        except (StoreError, InvalidTransitionError) as e:
            logger.error(
                "Failed to mark retried job completed",
                extra={"job_id": job_id, "error": str(e)},
            )
            return False

    # ========================================================================
    # Operator actions
    # ========================================================================

    async def manual_retry(self, job_id: str) -> bool:
        """
        Retry a failed job now.

        Waiting jobs are retried immediately, still subject to their retry
        budget. A permanently failed job is resubmitted to its queue as a
        new job with a fresh budget; its record stays for audit and leaves
        the permanent-failure list.

        Returns:
            True if the job was pushed back onto a queue.
        """
        try:
            failed = await self._load(job_id)
            if failed is None:
                logger.info("Job not found in DLQ", extra={"job_id": job_id})
                return False

            if failed.status in (FailureStatus.FAILED, FailureStatus.SCHEDULED_RETRY):
                await self.store.zadd(KEY_RETRY_SCHEDULE, {job_id: self.now_ms()})
                if failed.status == FailureStatus.FAILED:
                    await self._transition(failed, FailureStatus.SCHEDULED_RETRY)
                return await self._retry_one(job_id)

            if failed.status == FailureStatus.PERMANENT_FAILURE:
                new_id = await self.queue_engine.enqueue(failed.original_queue, failed.payload)
                await self._save(
                    failed.model_copy(
                        update={"metadata": {**failed.metadata, "resubmitted_as": new_id}}
                    )
                )
                await self.store.lrem(KEY_DLQ_PERMANENT, 0, job_id)
                await self.store.srem(backlog_key(failed.original_queue), job_id)
                logger.info(
                    "Permanent failure resubmitted",
                    extra={"job_id": job_id, "new_job_id": new_id},
                )
                return True

            return False

        except (StoreError, InvalidTransitionError, ValueError) as e:
            logger.error(
                "Manual retry failed",
                extra={"job_id": job_id, "error": str(e)},
            )
            return False

    async def get_failed_job(self, job_id: str) -> FailedJob | None:
        """Fetch a failed-job record, or None if missing or unreadable."""
        try:
            return await self._load(job_id)
        except StoreError as e:
            logger.error(
                "Error getting failed job",
                extra={"job_id": job_id, "error": str(e)},
            )
            return None

    async def list_permanent_failures(self, limit: int = 50) -> list[FailedJob]:
        """Most recent permanent failures, newest first."""
        try:
            job_ids = await self.store.lrange(KEY_DLQ_PERMANENT, 0, limit - 1)
            jobs = []
            for job_id in job_ids:
                failed = await self._load(job_id)
                if failed is not None:
                    jobs.append(failed)
            return jobs
        except StoreError as e:
            logger.error("Error listing permanent failures", extra={"error": str(e)})
            return []

    async def purge_older_than(self, days: int | None = None) -> int:
        """
        Delete failed-job records whose last failure predates the cutoff.

        Covers both active and permanently failed records.

        Returns:
            Number of records purged.
        """
        days = days if days is not None else get_settings().dlq_retention_days
        cutoff = self.now_ms() - days * 24 * 60 * 60 * 1000
        purged = 0

        try:
            job_ids = await self.store.zrangebyscore(KEY_DLQ_FAILED_AT, "-inf", cutoff)
            for job_id in job_ids:
                failed = await self._load(job_id)
                await self.store.delete(failed_job_key(job_id))
                await self.store.zrem(KEY_RETRY_SCHEDULE, job_id)
                await self.store.lrem(KEY_DLQ_PERMANENT, 0, job_id)
                if failed is not None:
                    await self.store.srem(backlog_key(failed.original_queue), job_id)
                await self.store.zrem(KEY_DLQ_FAILED_AT, job_id)
                purged += 1
        except StoreError as e:
            logger.error("Error purging old failed jobs", extra={"error": str(e)})

        logger.info(f"Purged {purged} old failed jobs", extra={"days": days})
        return purged

    # ========================================================================
    # Stats
    # ========================================================================

    async def queue_backlog(self, queue_name: str) -> int:
        """Number of jobs still tracked for a queue. Raises StoreError."""
        return await self.store.scard(backlog_key(queue_name))

    async def collect_stats(self) -> DLQStats:
        """
        Read current DLQ sizes.

        Raises:
            StoreError: If the store could not be read.
        """
        scheduled, permanent, tracked = await self.store.pipeline(
            [
                ["ZCARD", KEY_RETRY_SCHEDULE],
                ["LLEN", KEY_DLQ_PERMANENT],
                ["ZCARD", KEY_DLQ_FAILED_AT],
            ]
        )
        by_queue: dict[str, int] = {}
        for queue_name in await self.queue_engine.known_queues():
            count = await self.queue_backlog(queue_name)
            if count:
                by_queue[queue_name] = count

        return DLQStats(
            scheduled_retries=int(scheduled or 0),
            permanent_failures=int(permanent or 0),
            tracked=int(tracked or 0),
            by_queue=by_queue,
        )

    async def get_stats(self) -> DLQStats:
        """Current DLQ sizes, empty stats if the store is unreachable."""
        try:
            return await self.collect_stats()
        except StoreError as e:
            logger.error("Error getting DLQ stats", extra={"error": str(e)})
            return DLQStats()

    async def get_metrics(self, days: int = 7) -> DLQMetrics:
        """
        Daily DLQ activity for the last ``days`` days.

        Returns:
            DLQMetrics with per-day ``{queue}:{action}`` counters and a
            summary per action.
        """
        metrics = DLQMetrics()
        today = datetime.fromtimestamp(self._clock(), tz=UTC)

        try:
            for offset in range(days):
                date = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
                counters = await self.store.hgetall(f"{KEY_DLQ_METRICS_PREFIX}daily:{date}")
                if not counters:
                    continue
                day = {field: int(value) for field, value in counters.items()}
                metrics.daily[date] = day
                for field, value in day.items():
                    action = field.rsplit(":", 1)[-1]
                    metrics.summary[action] = metrics.summary.get(action, 0) + value
        except (StoreError, ValueError) as e:
            logger.error("Error getting DLQ metrics", extra={"error": str(e)})

        return metrics

    async def _update_metrics(self, queue_name: str, action: str) -> None:
        moment = datetime.fromtimestamp(self._clock(), tz=UTC)
        field = f"{queue_name}:{action}"
        daily = f"{KEY_DLQ_METRICS_PREFIX}daily:{moment:%Y-%m-%d}"
        hourly = f"{KEY_DLQ_METRICS_PREFIX}hourly:{moment:%Y-%m-%d:%H}"

        try:
            await self.store.pipeline(
                [
                    ["HINCRBY", daily, field, 1],
                    ["HINCRBY", hourly, field, 1],
                    ["EXPIRE", daily, DLQ_METRICS_TTL_SECONDS],
                    ["EXPIRE", hourly, DLQ_METRICS_TTL_SECONDS],
                ]
            )
        except StoreError as e:
            logger.warning(
                "Failed to update DLQ metrics",
                extra={"queue": queue_name, "action": action, "error": str(e)},
            )
