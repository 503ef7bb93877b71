"""
Per-invocation component wiring.

Every entry point (HTTP request, drain trigger, cron run) builds one
``Services`` around one open store client and drops it when done.
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass

from kvqueue.cache.tagged import TaggedCache
from kvqueue.dlq.dead_letter import DeadLetterQueue
from kvqueue.monitor.job_monitor import JobMonitor
from kvqueue.queue.engine import QueueEngine
from kvqueue.ratelimit.limiter import AdaptiveRateLimiter
from kvqueue.store.client import StoreClient


@dataclass
class Services:
    """The components of one invocation, sharing a store client and clock."""

    store: StoreClient
    queue: QueueEngine
    dlq: DeadLetterQueue
    monitor: JobMonitor
    limiter: AdaptiveRateLimiter
    cache: TaggedCache
    clock: Callable[[], float] = time.time


def build_services(
    store: StoreClient,
    clock: Callable[[], float] = time.time,
    rng: Callable[[], float] = random.random,
) -> Services:
    """
    Build all components around an open store client.

    Args:
        store: Store client, normally opened with ``async with``.
        clock: Time source in seconds, shared by every component.
        rng: Jitter source for retry delays.

    Returns:
        The wired components.
    """
    queue = QueueEngine(store, clock=clock)
    dlq = DeadLetterQueue(store, queue, clock=clock, rng=rng)
    monitor = JobMonitor(store, queue, dlq=dlq, clock=clock)
    return Services(
        store=store,
        queue=queue,
        dlq=dlq,
        monitor=monitor,
        limiter=AdaptiveRateLimiter(store, clock=clock),
        cache=TaggedCache(store, clock=clock),
        clock=clock,
    )
