"""
Queue engine: job queue semantics over list and sorted-set primitives.

Key layout for a queue ``q``:

- ``queue:{q}:pending``   list, LPUSH at the head and RPOP at the tail (FIFO)
- ``queue:{q}:delayed``   sorted set, job id scored by execute-at (ms)
- ``queue:{q}:inflight``  sorted set, job id scored by visibility deadline (ms)
- ``queue:{q}:malformed`` list of raw records that could not be decoded
- ``job:{id}``            hash holding status, timestamps and the job record

There is no blocking read. Consumers call ``drain`` on a schedule and get
an empty result when nothing is ready. Every multi-key update is an ordered
sequence of single-key operations, arranged so that a crash between two
steps leaves a job duplicated at worst, never lost.
"""

import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from kvqueue.config import get_settings
from kvqueue.constants import (
    JOB_COMPLETED_TTL_SECONDS,
    JOB_FAILED_TTL_SECONDS,
    KEY_JOB_PREFIX,
    KEY_QUEUE_REGISTRY,
    PROMOTE_CLAIM_TTL_SECONDS,
    SPAN_DRAIN_QUEUE,
    SPAN_ENQUEUE,
    SPAN_EXECUTE_JOB,
    SPAN_REQUEUE_STALLED,
    JobStatus,
)
from kvqueue.observability.metrics import get_metrics
from kvqueue.observability.tracing import get_tracer
from kvqueue.queue.lifecycle import advance_job, parse_job_status
from kvqueue.store.client import StoreClient, StoreError
from kvqueue.store.serialization import (
    DeserializationError,
    decode_json,
    deserialize,
    serialize,
)
from kvqueue.types.dlq import RetryConfig
from kvqueue.types.job import DrainResult, Job, JobResult, JobStatusView, QueueStats

if TYPE_CHECKING:
    from kvqueue.dlq.dead_letter import DeadLetterQueue
    from kvqueue.monitor.job_monitor import JobMonitor

logger = logging.getLogger(__name__)

# A processor receives a popped job and returns a JobResult (or any value,
# taken as a successful output). Raising counts as a failure.
Processor = Callable[[Job], Awaitable[Any]]

_QUEUE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def validate_queue_name(queue_name: str) -> str:
    """
    Check that a queue name is safe to embed in store keys.

    Raises:
        ValueError: If the name is empty, too long or contains separators.
    """
    if not _QUEUE_NAME_RE.match(queue_name):
        raise ValueError(f"Invalid queue name: {queue_name!r}")
    return queue_name


def pending_key(queue_name: str) -> str:
    return f"queue:{queue_name}:pending"


def delayed_key(queue_name: str) -> str:
    return f"queue:{queue_name}:delayed"


def inflight_key(queue_name: str) -> str:
    return f"queue:{queue_name}:inflight"


def malformed_key(queue_name: str) -> str:
    return f"queue:{queue_name}:malformed"


def job_key(job_id: str) -> str:
    return f"{KEY_JOB_PREFIX}{job_id}"


def _int_or_none(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


async def run_processor(processor: Processor, job: Job) -> JobResult:
    """
    Run a processor and normalize its outcome.

    Args:
        processor: The caller-supplied processor.
        job: The popped job.

    Returns:
        JobResult. Exceptions become failed results; any non-JobResult
        return value becomes a successful result carrying that output.
    """
    try:
        outcome = await processor(job)
    except Exception as e:
        logger.exception(
            "Processor raised exception",
            extra={"job_id": job.id, "queue": job.queue_name, "error": str(e)},
        )
        return JobResult(success=False, error=str(e) or type(e).__name__)

    if isinstance(outcome, JobResult):
        if not outcome.success and not outcome.error:
            return outcome.model_copy(update={"error": "Processor reported failure"})
        return outcome
    return JobResult(success=True, output=outcome)


class QueueEngine:
    """
    Enqueue/dequeue emulation on top of the backing store.

    Instances hold no store state between calls; they are cheap to build
    once per invocation around an open store client.
    """

    def __init__(
        self,
        store: StoreClient,
        clock: Callable[[], float] = time.time,
        visibility_timeout_seconds: int | None = None,
        promote_batch_size: int | None = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Open store client.
            clock: Returns the current time in seconds.
            visibility_timeout_seconds: How long a popped job may stay in
                flight before the stalled sweep requeues it.
            promote_batch_size: Max delayed jobs promoted per call.
        """
        settings = get_settings()
        self.store = store
        self._clock = clock
        self.visibility_timeout_seconds = (
            visibility_timeout_seconds or settings.visibility_timeout_seconds
        )
        self.promote_batch_size = promote_batch_size or settings.promote_batch_size
        self._metrics = get_metrics()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ========================================================================
    # Producing
    # ========================================================================

    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        delay_ms: int | None = None,
    ) -> str:
        """
        Add a job to a queue.

        Without a delay the job goes straight onto the pending list. With a
        positive delay it is recorded only in the delayed set until
        ``promote_delayed`` moves it.

        Args:
            queue_name: Target queue.
            payload: Opaque, JSON-compatible payload.
            delay_ms: Optional delay in milliseconds.

        Returns:
            The new job id.

        Raises:
            StoreError: If the job could not be stored.
            ValueError: If the queue name is invalid.
        """
        validate_queue_name(queue_name)
        now = self.now_ms()
        job_id = f"{now}-{uuid4().hex[:12]}"
        delayed = bool(delay_ms and delay_ms > 0)

        job = Job(
            id=job_id,
            queue_name=queue_name,
            payload=payload,
            created_at=now,
            execute_at=now + delay_ms if delayed else None,
        )
        record = serialize(job)
        status = JobStatus.DELAYED if delayed else JobStatus.QUEUED

        with get_tracer().start_as_current_span(SPAN_ENQUEUE) as span:
            span.set_attribute("queue", queue_name)
            span.set_attribute("job_id", job_id)

            fields: dict[str, Any] = {
                "status": status,
                "queue_name": queue_name,
                "record": record,
                "created_at": now,
                "retry_count": 0,
            }
            if job.execute_at is not None:
                fields["execute_at"] = job.execute_at

            await self.store.hset(job_key(job_id), fields)
            await self.store.sadd(KEY_QUEUE_REGISTRY, queue_name)

            if delayed:
                await self.store.zadd(delayed_key(queue_name), {job_id: job.execute_at})
            else:
                await self.store.lpush(pending_key(queue_name), record)

        self._metrics.record_job_enqueued(queue_name, delayed)
        logger.info(
            "Job enqueued",
            extra={"job_id": job_id, "queue": queue_name, "delay_ms": delay_ms or 0},
        )
        return job_id

    async def requeue(self, job: Job) -> None:
        """
        Put an existing job record back on the pending list.

        Used by the dead-letter queue for retries. The job keeps its id.

        Raises:
            InvalidTransitionError: If the job already reached a terminal
                status, e.g. a stalled copy completed in the meantime.
            StoreError: If the job could not be stored.
        """
        current = parse_job_status(await self.store.hget(job_key(job.id), "status"))
        if current is not None:
            advance_job(current, JobStatus.QUEUED)

        record = serialize(job)
        await self.store.hset(
            job_key(job.id),
            {
                "status": JobStatus.QUEUED,
                "queue_name": job.queue_name,
                "record": record,
                "retry_count": job.retry_count,
                "requeued_at": self.now_ms(),
            },
        )
        await self.store.sadd(KEY_QUEUE_REGISTRY, job.queue_name)
        await self.store.lpush(pending_key(job.queue_name), record)

    # ========================================================================
    # Delayed jobs
    # ========================================================================

    async def promote_delayed(self, queue_name: str) -> int:
        """
        Move due delayed jobs onto the pending list.

        Idempotent: a job whose hash no longer says ``delayed`` is only
        removed from the delayed set, and a short NX claim keeps two
        overlapping drains from both pushing the same job.

        Returns:
            Number of jobs promoted by this call.
        """
        try:
            due = await self.store.zrangebyscore(
                delayed_key(queue_name),
                "-inf",
                self.now_ms(),
                count=self.promote_batch_size,
            )
        except StoreError as e:
            logger.warning(
                "Failed to read delayed jobs",
                extra={"queue": queue_name, "error": str(e)},
            )
            return 0

        promoted = 0
        for job_id in due:
            try:
                if await self._promote_one(queue_name, job_id):
                    promoted += 1
            except StoreError as e:
                logger.warning(
                    "Failed to promote delayed job",
                    extra={"queue": queue_name, "job_id": job_id, "error": str(e)},
                )

        if promoted:
            logger.info(
                f"Promoted {promoted} delayed jobs",
                extra={"queue": queue_name},
            )
        return promoted

    async def _promote_one(self, queue_name: str, job_id: str) -> bool:
        fields = await self.store.hgetall(job_key(job_id))
        record = fields.get("record")

        if not fields or record is None:
            logger.warning(
                "Dropping delayed entry without job record",
                extra={"queue": queue_name, "job_id": job_id},
            )
            await self.store.zrem(delayed_key(queue_name), job_id)
            return False

        if fields.get("status") != JobStatus.DELAYED:
            # Already promoted by an earlier or concurrent drain
            await self.store.zrem(delayed_key(queue_name), job_id)
            return False

        claimed = await self.store.set(
            f"{job_key(job_id)}:promote",
            self.now_ms(),
            ex=PROMOTE_CLAIM_TTL_SECONDS,
            nx=True,
        )
        if not claimed:
            return False

        await self.store.lpush(pending_key(queue_name), record)
        await self.store.hset(job_key(job_id), {"status": JobStatus.QUEUED})
        await self.store.zrem(delayed_key(queue_name), job_id)
        return True

    # ========================================================================
    # Consuming
    # ========================================================================

    async def dequeue_one(self, queue_name: str) -> Job | None:
        """
        Pop the oldest pending job.

        Records that cannot be decoded are parked on the malformed list and
        popping continues. The returned job is tracked in the in-flight set
        until it is acknowledged or its visibility timeout passes.

        Returns:
            The job, or None when the queue is empty.

        Raises:
            StoreError: If the store could not be reached.
        """
        while True:
            raw = await self.store.rpop(pending_key(queue_name))
            if raw is None:
                return None

            decoded = deserialize(raw, Job)
            if isinstance(decoded, DeserializationError):
                logger.warning(
                    "Parking malformed job record",
                    extra={"queue": queue_name, "error": decoded.error},
                )
                await self.store.lpush(malformed_key(queue_name), raw)
                continue

            job = decoded.value
            now = self.now_ms()
            deadline = now + self.visibility_timeout_seconds * 1000

            await self.store.zadd(inflight_key(queue_name), {job.id: deadline})
            await self.store.hset(
                job_key(job.id),
                {
                    "status": JobStatus.PROCESSING,
                    "queue_name": queue_name,
                    "record": raw,
                    "started_at": now,
                },
            )
            return job

    async def ack(self, job: Job, outcome: JobResult) -> None:
        """
        Record the final outcome of a popped job and release it.

        Completed jobs keep their status for a day, failed ones for three.
        Store errors are logged, not raised; the stalled sweep covers a
        missed release.
        """
        now = self.now_ms()
        try:
            if outcome.success:
                fields: dict[str, Any] = {
                    "status": JobStatus.COMPLETED,
                    "completed_at": now,
                    "retry_count": job.retry_count,
                }
                if outcome.output is not None:
                    fields["result"] = serialize(outcome.output)
                ttl = JOB_COMPLETED_TTL_SECONDS
            else:
                fields = {
                    "status": JobStatus.FAILED,
                    "failed_at": now,
                    "error": outcome.error or "Unknown error",
                    "retry_count": job.retry_count,
                }
                ttl = JOB_FAILED_TTL_SECONDS

            await self.store.hset(job_key(job.id), fields)
            await self.store.expire(job_key(job.id), ttl)
            await self.store.zrem(inflight_key(job.queue_name), job.id)
        except StoreError as e:
            logger.warning(
                "Failed to acknowledge job",
                extra={"job_id": job.id, "queue": job.queue_name, "error": str(e)},
            )

    async def drain(
        self,
        queue_name: str,
        processor: Processor,
        *,
        monitor: "JobMonitor | None" = None,
        dlq: "DeadLetterQueue | None" = None,
        max_jobs: int | None = None,
        time_budget_seconds: float | None = None,
        retry_config: RetryConfig | None = None,
    ) -> DrainResult:
        """
        Run one polling pass over a queue.

        Promotes due delayed jobs, then pops and processes jobs one at a
        time until ``max_jobs`` is reached, the queue is empty, or the
        wall-clock budget runs out. Outcomes go to the monitor; failures go
        to the dead-letter queue. Nothing here is raised to the caller.

        Args:
            queue_name: Queue to drain.
            processor: Called once per popped job.
            monitor: Receives start/completion records.
            dlq: Receives failures and successful retries.
            max_jobs: Upper bound on jobs processed.
            time_budget_seconds: Wall-clock budget for this pass.
            retry_config: Retry policy for jobs failing in this pass.

        Returns:
            DrainResult with success/failure counts and error messages.
        """
        settings = get_settings()
        max_jobs = max_jobs or settings.drain_max_jobs
        budget = time_budget_seconds or settings.drain_time_budget_seconds
        started = self._clock()
        result = DrainResult()

        with get_tracer().start_as_current_span(SPAN_DRAIN_QUEUE) as span:
            span.set_attribute("queue", queue_name)
            span.set_attribute("max_jobs", max_jobs)

            await self.promote_delayed(queue_name)

            for _ in range(max_jobs):
                if self._clock() - started >= budget:
                    logger.info(
                        "Drain time budget exhausted",
                        extra={"queue": queue_name, "budget_seconds": budget},
                    )
                    break

                try:
                    job = await self.dequeue_one(queue_name)
                except StoreError as e:
                    logger.warning(
                        "Dequeue failed, ending drain pass",
                        extra={"queue": queue_name, "error": str(e)},
                    )
                    result.errors.append(f"dequeue: {e}")
                    break

                if job is None:
                    break

                outcome = await self._process(job, processor, monitor, dlq, retry_config)
                if outcome.success:
                    result.processed += 1
                else:
                    result.failed += 1
                    result.errors.append(f"{job.id}: {outcome.error}")

            span.set_attribute("processed", result.processed)
            span.set_attribute("failed", result.failed)

        await self._refresh_depth(queue_name)

        if result.processed or result.failed:
            logger.info(
                f"Drained {result.processed} jobs, {result.failed} failed",
                extra={"queue": queue_name},
            )
        return result

    async def _process(
        self,
        job: Job,
        processor: Processor,
        monitor: "JobMonitor | None",
        dlq: "DeadLetterQueue | None",
        retry_config: RetryConfig | None,
    ) -> JobResult:
        if monitor is not None:
            await monitor.record_start(job.id, job.queue_name)

        started = self._clock()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("queue", job.queue_name)
            span.set_attribute("retry_count", job.retry_count)
            outcome = await run_processor(processor, job)
            span.set_attribute("success", outcome.success)

        duration = self._clock() - started
        outcome = outcome.model_copy(update={"duration_ms": duration * 1000})

        if outcome.success:
            await self.ack(job, outcome)
            if dlq is not None and job.is_retry:
                await dlq.mark_completed(job.id)
        else:
            logger.warning(
                "Job failed",
                extra={
                    "job_id": job.id,
                    "queue": job.queue_name,
                    "error": outcome.error,
                    "retry_count": job.retry_count,
                },
            )
            # Record the failure before releasing the in-flight entry so a
            # crash in between leads to a requeue, not a lost job.
            if dlq is not None:
                await dlq.record_failure(job, outcome.error or "Unknown error", retry_config)
            await self.ack(job, outcome)

        if monitor is not None:
            await monitor.record_completion(
                job.id,
                job.queue_name,
                outcome.success,
                error=outcome.error,
                result=outcome.output,
            )

        self._metrics.record_job_processed(
            job.queue_name,
            JobStatus.COMPLETED if outcome.success else JobStatus.FAILED,
            duration,
        )
        return outcome

    # ========================================================================
    # Visibility timeout
    # ========================================================================

    async def requeue_stalled(
        self,
        queue_name: str,
        monitor: "JobMonitor | None" = None,
    ) -> int:
        """
        Requeue in-flight jobs whose visibility deadline has passed.

        A job popped by an invocation that died before reporting is still
        ``processing`` in its hash; it goes back on the pending list.
        Entries whose job has since finished are just dropped.

        Returns:
            Number of jobs requeued.
        """
        with get_tracer().start_as_current_span(SPAN_REQUEUE_STALLED) as span:
            span.set_attribute("queue", queue_name)
            try:
                expired = await self.store.zrangebyscore(
                    inflight_key(queue_name), "-inf", self.now_ms()
                )
            except StoreError as e:
                logger.warning(
                    "Failed to read in-flight jobs",
                    extra={"queue": queue_name, "error": str(e)},
                )
                return 0

            requeued = 0
            for job_id in expired:
                try:
                    if await self._requeue_one(queue_name, job_id):
                        requeued += 1
                        if monitor is not None:
                            await monitor.record_abandoned(job_id, queue_name)
                except StoreError as e:
                    logger.warning(
                        "Failed to requeue stalled job",
                        extra={"queue": queue_name, "job_id": job_id, "error": str(e)},
                    )
            span.set_attribute("requeued", requeued)

        if requeued:
            self._metrics.record_stalled_requeued(queue_name, requeued)
            logger.warning(
                f"Requeued {requeued} stalled jobs",
                extra={"queue": queue_name},
            )
        return requeued

    async def _requeue_one(self, queue_name: str, job_id: str) -> bool:
        fields = await self.store.hgetall(job_key(job_id))
        status = fields.get("status")
        record = fields.get("record")

        if status != JobStatus.PROCESSING or record is None:
            await self.store.zrem(inflight_key(queue_name), job_id)
            return False

        claimed = await self.store.set(
            f"{job_key(job_id)}:requeue",
            self.now_ms(),
            ex=PROMOTE_CLAIM_TTL_SECONDS,
            nx=True,
        )
        if not claimed:
            return False

        await self.store.lpush(pending_key(queue_name), record)
        await self.store.hset(
            job_key(job_id),
            {"status": JobStatus.QUEUED, "requeued_at": self.now_ms()},
        )
        await self.store.zrem(inflight_key(queue_name), job_id)
        return True

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_status(self, job_id: str) -> JobStatusView | None:
        """
        Look up a job's status.

        Returns:
            The status view, or None if the job is unknown or has expired.
        """
        try:
            fields = await self.store.hgetall(job_key(job_id))
        except StoreError as e:
            logger.warning(
                "Failed to read job status",
                extra={"job_id": job_id, "error": str(e)},
            )
            return None

        if not fields or "status" not in fields:
            return None

        status = parse_job_status(fields["status"])
        if status is None:
            logger.warning(
                "Unknown job status in store",
                extra={"job_id": job_id, "status": fields["status"]},
            )
            return None

        result = None
        if "result" in fields:
            decoded = decode_json(fields["result"])
            result = decoded.raw if isinstance(decoded, DeserializationError) else decoded.value

        return JobStatusView(
            job_id=job_id,
            queue_name=fields.get("queue_name", ""),
            status=status,
            retry_count=_int_or_none(fields.get("retry_count")) or 0,
            created_at=_int_or_none(fields.get("created_at")),
            execute_at=_int_or_none(fields.get("execute_at")),
            started_at=_int_or_none(fields.get("started_at")),
            completed_at=_int_or_none(fields.get("completed_at")),
            failed_at=_int_or_none(fields.get("failed_at")),
            result=result,
            error=fields.get("error"),
        )

    async def pending_count(self, queue_name: str) -> int:
        """Length of the pending list. Raises StoreError."""
        return await self.store.llen(pending_key(queue_name))

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        """Sizes of a queue's keys, zeros if the store is unreachable."""
        try:
            pending, delayed, inflight, malformed = await self.store.pipeline(
                [
                    ["LLEN", pending_key(queue_name)],
                    ["ZCARD", delayed_key(queue_name)],
                    ["ZCARD", inflight_key(queue_name)],
                    ["LLEN", malformed_key(queue_name)],
                ]
            )
        except StoreError as e:
            logger.warning(
                "Failed to read queue stats",
                extra={"queue": queue_name, "error": str(e)},
            )
            return QueueStats(queue_name=queue_name)

        return QueueStats(
            queue_name=queue_name,
            pending=int(pending or 0),
            delayed=int(delayed or 0),
            inflight=int(inflight or 0),
            malformed=int(malformed or 0),
        )

    async def known_queues(self) -> list[str]:
        """Configured queues plus every queue that has ever been used."""
        names = set(get_settings().queue_names)
        try:
            names |= await self.store.smembers(KEY_QUEUE_REGISTRY)
        except StoreError as e:
            logger.warning("Failed to read queue registry", extra={"error": str(e)})
        return sorted(names)

    async def _refresh_depth(self, queue_name: str) -> None:
        try:
            depth = await self.pending_count(queue_name)
        except StoreError:
            return
        self._metrics.update_queue_depth(queue_name, depth)
