"""
Job monitor: counters, latency samples, throughput and alerting.

Key layout for a queue ``q``:

- ``job:{id}:metadata``                     hash with start/end times (1h expiry)
- ``job-metrics:{q}:processing|completed|failed``  counters
- ``processing:{q}``                        set of job ids currently running
- ``latency-samples:{q}:{hour}``            sorted set, score = completion ms,
                                            member = ``{processing ms}:{nonce}``
- ``job-metrics:throughput:{q}:hour:{h}``   counter (7d), ``:day:{d}`` (30d)
- ``alerts:{id}`` / ``alerts:recent``       alert records and the recent list

Hour and day buckets are whole hours/days since the epoch.
"""

import logging
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from kvqueue.config import get_settings
from kvqueue.constants import (
    ALERT_RECENT_LIMIT,
    ALERT_TTL_SECONDS,
    JOB_METADATA_TTL_SECONDS,
    KEY_ALERT_PREFIX,
    KEY_ALERTS_RECENT,
    KEY_JOB_METRICS_PREFIX,
    KEY_LATENCY_PREFIX,
    KEY_PROCESSING_PREFIX,
    LATENCY_SAMPLE_LIMIT,
    LATENCY_SAMPLE_TTL_SECONDS,
    THROUGHPUT_DAY_TTL_SECONDS,
    THROUGHPUT_HOUR_TTL_SECONDS,
    AlertSeverity,
    AlertType,
    HealthStatus,
)
from kvqueue.dlq.dead_letter import DeadLetterQueue
from kvqueue.monitor.stats import summarize_latency
from kvqueue.observability.metrics import get_metrics
from kvqueue.queue.engine import QueueEngine, delayed_key, pending_key
from kvqueue.store.client import StoreClient, StoreError
from kvqueue.store.serialization import DeserializationError, deserialize, serialize
from kvqueue.types.monitor import (
    Alert,
    HealthReport,
    JobMetricsSnapshot,
    LatencyPercentiles,
    PerformanceMetrics,
    QueueMetrics,
)

logger = logging.getLogger(__name__)

MS_PER_HOUR = 60 * 60 * 1000
MS_PER_DAY = 24 * MS_PER_HOUR


def _counter_key(queue_name: str, counter: str) -> str:
    return f"{KEY_JOB_METRICS_PREFIX}{queue_name}:{counter}"


def _metadata_key(job_id: str) -> str:
    return f"job:{job_id}:metadata"


def _throughput_key(queue_name: str, unit: str, bucket: int) -> str:
    return f"{KEY_JOB_METRICS_PREFIX}throughput:{queue_name}:{unit}:{bucket}"


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


class AlertThresholds:
    """Alert thresholds, read from settings unless given explicitly."""

    def __init__(
        self,
        error_rate: float | None = None,
        latency_p95_ms: float | None = None,
        queue_size: int | None = None,
        dlq_size: int | None = None,
        low_throughput: int | None = None,
    ):
        settings = get_settings()
        self.error_rate = error_rate if error_rate is not None else settings.alert_error_rate
        self.latency_p95_ms = (
            latency_p95_ms if latency_p95_ms is not None else settings.alert_latency_p95_ms
        )
        self.queue_size = queue_size if queue_size is not None else settings.alert_queue_size
        self.dlq_size = dlq_size if dlq_size is not None else settings.alert_dlq_size
        self.low_throughput = (
            low_throughput if low_throughput is not None else settings.alert_low_throughput
        )


class JobMonitor:
    """
    Records job outcomes and evaluates alert thresholds.

    Recording and read methods never raise; store errors are logged and a
    zeroed result is returned. ``health_check`` uses the strict readers to
    tell which subsystems actually answer.
    """

    def __init__(
        self,
        store: StoreClient,
        queue_engine: QueueEngine,
        dlq: DeadLetterQueue | None = None,
        clock: Callable[[], float] = time.time,
        thresholds: AlertThresholds | None = None,
    ):
        """
        Initialize the monitor.

        Args:
            store: Open store client.
            queue_engine: Used for queue discovery.
            dlq: Dead-letter queue, for backlog alerts and health checks.
            clock: Returns the current time in seconds.
            thresholds: Alert thresholds; defaults come from settings.
        """
        self.store = store
        self.queue_engine = queue_engine
        self.dlq = dlq
        self._clock = clock
        self.thresholds = thresholds or AlertThresholds()
        self._metrics = get_metrics()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _hour(self, now: int | None = None) -> int:
        return (now if now is not None else self.now_ms()) // MS_PER_HOUR

    def _day(self, now: int | None = None) -> int:
        return (now if now is not None else self.now_ms()) // MS_PER_DAY

    # ========================================================================
    # Recording
    # ========================================================================

    async def record_start(self, job_id: str, queue_name: str) -> None:
        """Record that a job started processing."""
        now = self.now_ms()
        try:
            await self.store.pipeline(
                [
                    [
                        "HSET",
                        _metadata_key(job_id),
                        "start_time",
                        now,
                        "queue",
                        queue_name,
                        "status",
                        "processing",
                    ],
                    ["EXPIRE", _metadata_key(job_id), JOB_METADATA_TTL_SECONDS],
                    ["INCR", _counter_key(queue_name, "processing")],
                    ["SADD", f"{KEY_PROCESSING_PREFIX}{queue_name}", job_id],
                ]
            )
        except StoreError as e:
            logger.warning(
                "Failed to record job start",
                extra={"job_id": job_id, "queue": queue_name, "error": str(e)},
            )

    async def record_completion(
        self,
        job_id: str,
        queue_name: str,
        success: bool,
        error: str | None = None,
        result: Any = None,
    ) -> list[Alert]:
        """
        Record a job's outcome, then evaluate alerts for its queue.

        Returns:
            Alerts raised by the threshold check.
        """
        now = self.now_ms()
        try:
            start_time = await self.store.hget(_metadata_key(job_id), "start_time")
            started = int(start_time) if start_time else now
            processing_ms = max(0, now - started)

            hour = self._hour(now)
            day = self._day(now)
            samples_key = f"{KEY_LATENCY_PREFIX}{queue_name}:{hour}"
            hour_key = _throughput_key(queue_name, "hour", hour)
            day_key = _throughput_key(queue_name, "day", day)

            await self.store.pipeline(
                [
                    [
                        "HSET",
                        _metadata_key(job_id),
                        "end_time",
                        now,
                        "processing_time",
                        processing_ms,
                        "status",
                        "completed" if success else "failed",
                        "error",
                        error or "",
                        "result",
                        serialize(result) if result is not None else "",
                    ],
                    ["INCR", _counter_key(queue_name, "completed" if success else "failed")],
                    ["DECR", _counter_key(queue_name, "processing")],
                    ["SREM", f"{KEY_PROCESSING_PREFIX}{queue_name}", job_id],
                    ["ZADD", samples_key, now, f"{processing_ms}:{uuid4().hex[:8]}"],
                    ["ZREMRANGEBYRANK", samples_key, 0, -(LATENCY_SAMPLE_LIMIT + 1)],
                    ["EXPIRE", samples_key, LATENCY_SAMPLE_TTL_SECONDS],
                    ["INCR", hour_key],
                    ["INCR", day_key],
                    ["EXPIRE", hour_key, THROUGHPUT_HOUR_TTL_SECONDS],
                    ["EXPIRE", day_key, THROUGHPUT_DAY_TTL_SECONDS],
                ]
            )
        except (StoreError, ValueError) as e:
            logger.warning(
                "Failed to record job completion",
                extra={"job_id": job_id, "queue": queue_name, "error": str(e)},
            )
            return []

        return await self.check_alerts(queue_name)

    async def record_abandoned(self, job_id: str, queue_name: str) -> None:
        """Release the processing counter of a job the stalled sweep requeued."""
        try:
            await self.store.pipeline(
                [
                    ["DECR", _counter_key(queue_name, "processing")],
                    ["SREM", f"{KEY_PROCESSING_PREFIX}{queue_name}", job_id],
                    ["HSET", _metadata_key(job_id), "status", "abandoned"],
                ]
            )
        except StoreError as e:
            logger.warning(
                "Failed to record abandoned job",
                extra={"job_id": job_id, "queue": queue_name, "error": str(e)},
            )

    # ========================================================================
    # Reads
    # ========================================================================

    async def latency_samples(self, queue_name: str, hours: int = 1) -> list[float]:
        """Latency samples (ms) for the last ``hours`` hour buckets. Raises StoreError."""
        current = self._hour()
        samples: list[float] = []
        for offset in range(hours):
            key = f"{KEY_LATENCY_PREFIX}{queue_name}:{current - offset}"
            for member in await self.store.zrange(key, 0, -1):
                latency, _, _ = member.partition(":")
                try:
                    samples.append(float(latency))
                except ValueError:
                    logger.warning("Skipping malformed latency sample", extra={"key": key})
        return samples

    async def latency_percentiles(self, queue_name: str, hours: int = 1) -> LatencyPercentiles:
        """Latency summary over the last ``hours`` hours; empty on store errors."""
        try:
            return summarize_latency(await self.latency_samples(queue_name, hours))
        except StoreError as e:
            logger.warning(
                "Failed to read latency samples",
                extra={"queue": queue_name, "error": str(e)},
            )
            return LatencyPercentiles()

    async def throughput(self, queue_name: str, hours: int) -> int:
        """Jobs finished in the last ``hours`` hour buckets. Raises StoreError."""
        current = self._hour()
        keys = [
            ["GET", _throughput_key(queue_name, "hour", current - offset)]
            for offset in range(hours)
        ]
        return sum(_as_int(value) for value in await self.store.pipeline(keys))

    async def collect_queue_metrics(self, queue_name: str) -> QueueMetrics:
        """
        Read the metrics of one queue.

        Raises:
            StoreError: If the store could not be read.
        """
        pending, delayed, processing, completed, failed, throughput = await self.store.pipeline(
            [
                ["LLEN", pending_key(queue_name)],
                ["ZCARD", delayed_key(queue_name)],
                ["GET", _counter_key(queue_name, "processing")],
                ["GET", _counter_key(queue_name, "completed")],
                ["GET", _counter_key(queue_name, "failed")],
                ["GET", _throughput_key(queue_name, "hour", self._hour())],
            ]
        )
        completed = _as_int(completed)
        failed = _as_int(failed)
        finished = completed + failed

        dlq_backlog = await self.dlq.queue_backlog(queue_name) if self.dlq is not None else 0
        latency = summarize_latency(await self.latency_samples(queue_name, 1))

        return QueueMetrics(
            queue_name=queue_name,
            pending=_as_int(pending),
            delayed=_as_int(delayed),
            processing=_as_int(processing),
            completed=completed,
            failed=failed,
            error_rate=failed / finished if finished else 0.0,
            throughput_last_hour=_as_int(throughput),
            dlq_backlog=dlq_backlog,
            latency=latency,
        )

    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics:
        """Metrics of one queue, zeroed if the store is unreachable."""
        try:
            return await self.collect_queue_metrics(queue_name)
        except StoreError as e:
            logger.error(
                "Error getting queue metrics",
                extra={"queue": queue_name, "error": str(e)},
            )
            return QueueMetrics(queue_name=queue_name)

    async def collect_job_metrics(self) -> JobMetricsSnapshot:
        """
        Read metrics for every known queue.

        Raises:
            StoreError: If the store could not be read.
        """
        snapshot = JobMetricsSnapshot(timestamp=self.now_ms())
        for queue_name in await self.queue_engine.known_queues():
            metrics = await self.collect_queue_metrics(queue_name)
            snapshot.queues[queue_name] = metrics
            snapshot.total_processing += metrics.processing
            snapshot.total_completed += metrics.completed
            snapshot.total_failed += metrics.failed

        finished = snapshot.total_completed + snapshot.total_failed
        snapshot.overall_error_rate = snapshot.total_failed / finished if finished else 0.0
        return snapshot

    async def get_job_metrics(self) -> JobMetricsSnapshot:
        """Metrics for every known queue, empty if the store is unreachable."""
        try:
            return await self.collect_job_metrics()
        except StoreError as e:
            logger.error("Error getting job metrics", extra={"error": str(e)})
            return JobMetricsSnapshot(timestamp=self.now_ms())

    async def get_performance_metrics(self) -> PerformanceMetrics:
        """Latency percentiles and throughput windows across all queues."""
        now = self.now_ms()
        try:
            samples: list[float] = []
            throughput = {"last_1h": 0, "last_24h": 0, "last_7d": 0}
            completed = failed = 0

            for queue_name in await self.queue_engine.known_queues():
                samples.extend(await self.latency_samples(queue_name, 1))
                throughput["last_1h"] += await self.throughput(queue_name, 1)
                throughput["last_24h"] += await self.throughput(queue_name, 24)
                throughput["last_7d"] += await self.throughput(queue_name, 24 * 7)
                done, errored = await self.store.pipeline(
                    [
                        ["GET", _counter_key(queue_name, "completed")],
                        ["GET", _counter_key(queue_name, "failed")],
                    ]
                )
                completed += _as_int(done)
                failed += _as_int(errored)

            finished = completed + failed
            return PerformanceMetrics(
                latency=summarize_latency(samples),
                throughput=throughput,
                error_rate=failed / finished if finished else 0.0,
                timestamp=now,
            )
        except StoreError as e:
            logger.error("Error getting performance metrics", extra={"error": str(e)})
            return PerformanceMetrics(timestamp=now)

    # ========================================================================
    # Alerts
    # ========================================================================

    async def check_alerts(self, queue_name: str | None = None) -> list[Alert]:
        """
        Evaluate alert thresholds for one queue or all known queues.

        Every breach creates a new alert; repeated breaches are not
        de-duplicated.

        Returns:
            Alerts created by this check.
        """
        queues = [queue_name] if queue_name else await self.queue_engine.known_queues()
        raised: list[Alert] = []
        t = self.thresholds

        for queue in queues:
            try:
                metrics = await self.collect_queue_metrics(queue)
            except StoreError as e:
                logger.error(
                    "Error checking alerts",
                    extra={"queue": queue, "error": str(e)},
                )
                continue

            breaches: list[tuple[AlertType, AlertSeverity, str, float, float]] = []

            if metrics.error_rate > t.error_rate:
                breaches.append((
                    AlertType.ERROR_RATE,
                    AlertSeverity.HIGH,
                    f"High error rate in {queue} queue: {metrics.error_rate * 100:.1f}%",
                    metrics.error_rate,
                    t.error_rate,
                ))

            if metrics.latency.p95 > t.latency_p95_ms:
                breaches.append((
                    AlertType.LATENCY,
                    AlertSeverity.MEDIUM,
                    f"High P95 latency in {queue} queue: {metrics.latency.p95 / 1000:.1f}s",
                    metrics.latency.p95,
                    t.latency_p95_ms,
                ))

            if metrics.pending > t.queue_size:
                breaches.append((
                    AlertType.QUEUE_SIZE,
                    AlertSeverity.MEDIUM,
                    f"Large queue size in {queue}: {metrics.pending} jobs pending",
                    metrics.pending,
                    t.queue_size,
                ))

            if metrics.dlq_backlog > t.dlq_size:
                breaches.append((
                    AlertType.DLQ_SIZE,
                    AlertSeverity.HIGH,
                    f"Large DLQ size in {queue}: {metrics.dlq_backlog} failed jobs",
                    metrics.dlq_backlog,
                    t.dlq_size,
                ))

            # Only once the queue has processed something
            if (
                metrics.completed + metrics.failed >= 1
                and metrics.throughput_last_hour < t.low_throughput
            ):
                breaches.append((
                    AlertType.THROUGHPUT,
                    AlertSeverity.MEDIUM,
                    f"Low throughput in {queue} queue: "
                    f"{metrics.throughput_last_hour} jobs/hour",
                    metrics.throughput_last_hour,
                    t.low_throughput,
                ))

            for alert_type, severity, message, value, threshold in breaches:
                alert = await self.create_alert(
                    alert_type, severity, message, value, threshold, queue=queue
                )
                if alert is not None:
                    raised.append(alert)

        return raised

    async def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        value: float,
        threshold: float,
        queue: str | None = None,
    ) -> Alert | None:
        """
        Store an alert and push it onto the recent-alerts list.

        Returns:
            The alert, or None if it could not be stored.
        """
        now = self.now_ms()
        alert = Alert(
            id=f"alert-{now}-{uuid4().hex[:8]}",
            type=alert_type,
            severity=severity,
            message=message,
            queue=queue,
            value=value,
            threshold=threshold,
            timestamp=now,
        )
        key = f"{KEY_ALERT_PREFIX}{alert.id}"

        try:
            await self.store.pipeline(
                [
                    ["HSET", key, "data", serialize(alert), "created", now, "acknowledged", "0"],
                    ["EXPIRE", key, ALERT_TTL_SECONDS],
                    ["LPUSH", KEY_ALERTS_RECENT, alert.id],
                    ["LTRIM", KEY_ALERTS_RECENT, 0, ALERT_RECENT_LIMIT - 1],
                ]
            )
        except StoreError as e:
            logger.error(
                "Failed to create alert",
                extra={"alert_type": alert_type, "queue": queue, "error": str(e)},
            )
            return None

        self._metrics.record_alert(alert_type, severity)
        logger.warning(
            f"ALERT [{severity.upper()}]: {message}",
            extra={"alert_id": alert.id, "alert_type": alert_type, "queue": queue},
        )
        return alert

    async def get_alerts(self, limit: int = 20) -> list[Alert]:
        """Most recent alerts, newest first. Expired alerts are skipped."""
        try:
            alert_ids = await self.store.lrange(KEY_ALERTS_RECENT, 0, limit - 1)
            alerts: list[Alert] = []
            for alert_id in alert_ids:
                fields = await self.store.hgetall(f"{KEY_ALERT_PREFIX}{alert_id}")
                if not fields:
                    continue
                decoded = deserialize(fields.get("data"), Alert)
                if isinstance(decoded, DeserializationError):
                    logger.warning(
                        "Skipping malformed alert",
                        extra={"alert_id": alert_id, "error": decoded.error},
                    )
                    continue
                alert = decoded.value
                if fields.get("acknowledged") == "1":
                    alert = alert.model_copy(update={"acknowledged": True})
                alerts.append(alert)
            return alerts
        except StoreError as e:
            logger.error("Error getting alerts", extra={"error": str(e)})
            return []

    async def acknowledge_alert(self, alert_id: str) -> bool:
        """
        Mark an alert as acknowledged.

        Returns:
            True if the alert exists and was updated.
        """
        key = f"{KEY_ALERT_PREFIX}{alert_id}"
        try:
            if not await self.store.exists(key):
                return False
            await self.store.hset(
                key, {"acknowledged": "1", "acknowledged_at": self.now_ms()}
            )
            return True
        except StoreError as e:
            logger.error(
                "Error acknowledging alert",
                extra={"alert_id": alert_id, "error": str(e)},
            )
            return False

    # ========================================================================
    # Health
    # ========================================================================

    async def health_check(self) -> HealthReport:
        """
        Check the store, a metrics read and a DLQ stats read.

        Returns:
            ``healthy`` if all checks pass, ``degraded`` if most do,
            ``unhealthy`` otherwise.
        """
        checks: dict[str, bool] = {}
        details: dict[str, Any] = {}

        try:
            checks["store"] = await self.store.ping()
        except StoreError as e:
            logger.error("Health check: store ping failed", extra={"error": str(e)})
            checks["store"] = False

        try:
            snapshot = await self.collect_job_metrics()
            checks["metrics"] = True
            details["total_completed"] = snapshot.total_completed
            details["total_failed"] = snapshot.total_failed
            details["total_processing"] = snapshot.total_processing
        except StoreError as e:
            logger.error("Health check: metrics read failed", extra={"error": str(e)})
            checks["metrics"] = False

        if self.dlq is not None:
            try:
                stats = await self.dlq.collect_stats()
                checks["dlq"] = True
                details["dlq_scheduled_retries"] = stats.scheduled_retries
                details["dlq_permanent_failures"] = stats.permanent_failures
            except StoreError as e:
                logger.error("Health check: DLQ read failed", extra={"error": str(e)})
                checks["dlq"] = False

        passed = sum(checks.values())
        if passed == len(checks):
            status = HealthStatus.HEALTHY
        elif passed * 2 > len(checks):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        return HealthReport(
            status=status,
            checks=checks,
            metrics=details,
            timestamp=self.now_ms(),
        )
