"""
One-shot worker invocation.

Runs a single drain pass over every queue that has a registered
processor, then one dead-letter retry pass, and exits. Meant to be
started by a scheduler (cron, a platform timer) rather than kept alive.
"""

import asyncio
import logging
from uuid import uuid4

from kvqueue.config import get_settings
from kvqueue.observability.logging import bind_context, clear_context, setup_logging
from kvqueue.observability.tracing import setup_tracing
from kvqueue.services import Services, build_services
from kvqueue.store.client import get_store_client
from kvqueue.types.job import DrainResult
from kvqueue.worker.handlers import get_processor, list_processors

logger = logging.getLogger(__name__)


class Worker:
    """
    Drains every queue with a registered processor once.

    The drain budget is shared: each queue gets what the previous ones
    left over, so the whole pass fits in one invocation window.
    """

    def __init__(
        self,
        services: Services,
        max_jobs: int | None = None,
        time_budget_seconds: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            services: Components built around an open store client.
            max_jobs: Jobs per queue per pass.
            time_budget_seconds: Wall-clock budget for the whole pass.
        """
        settings = get_settings()
        self.services = services
        self._clock = services.clock
        self.max_jobs = max_jobs or settings.drain_max_jobs
        self.time_budget = time_budget_seconds or settings.drain_time_budget_seconds

    async def run_once(self) -> DrainResult:
        """
        Drain each processor-backed queue, then the retry schedule.

        Returns:
            Combined DrainResult of all passes.
        """
        started = self._clock()
        total = DrainResult()

        for queue_name in list_processors():
            remaining = self.time_budget - (self._clock() - started)
            if remaining <= 0:
                logger.info("Worker budget exhausted before queue", extra={"queue": queue_name})
                break

            result = await self.services.queue.drain(
                queue_name,
                get_processor(queue_name),
                monitor=self.services.monitor,
                dlq=self.services.dlq,
                max_jobs=self.max_jobs,
                time_budget_seconds=remaining,
            )
            total = total.merge(result)

        total = total.merge(await self.services.dlq.drain_retries())

        logger.info(
            "Worker pass finished",
            extra={
                "processed": total.processed,
                "failed": total.failed,
                "errors": len(total.errors),
            },
        )
        return total


async def run_async() -> DrainResult:
    """Run one worker pass."""
    setup_logging()
    setup_tracing()
    bind_context(invocation="worker", invocation_id=uuid4().hex[:12])

    try:
        async with get_store_client() as store:
            return await Worker(build_services(store)).run_once()
    finally:
        clear_context()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
