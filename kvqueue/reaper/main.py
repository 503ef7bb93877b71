"""
Maintenance pass for recovering stalled jobs and pruning old state.

The reaper runs on a schedule to:
1. Requeue in-flight jobs whose visibility deadline passed (the invocation
   that popped them died before reporting)
2. Purge dead-letter records past the retention window
3. Drop empty tag indexes from the cache registry
"""

import asyncio
import logging
from uuid import uuid4

from kvqueue.observability.logging import bind_context, clear_context, setup_logging
from kvqueue.observability.tracing import setup_tracing
from kvqueue.services import Services, build_services
from kvqueue.store.client import get_store_client

logger = logging.getLogger(__name__)


class Reaper:
    """Runs the maintenance steps once against an open store client."""

    def __init__(self, services: Services):
        self.services = services

    async def requeue_stalled(self) -> int:
        """Requeue stalled jobs on every known queue."""
        requeued = 0
        for queue_name in await self.services.queue.known_queues():
            requeued += await self.services.queue.requeue_stalled(
                queue_name, monitor=self.services.monitor
            )
        return requeued

    async def run_once(self, retention_days: int | None = None) -> dict[str, int]:
        """
        Run every maintenance step.

        Args:
            retention_days: DLQ retention override.

        Returns:
            Count of affected items per step.
        """
        requeued = await self.requeue_stalled()
        purged = await self.services.dlq.purge_older_than(retention_days)
        reconciled = await self.services.cache.reconcile()

        summary = {
            "stalled_requeued": requeued,
            "dlq_purged": purged,
            "empty_tags_removed": reconciled.empty_tags_removed,
        }
        logger.info("Reaper pass finished", extra=summary)
        return summary


async def run_async() -> dict[str, int]:
    """Run one reaper pass."""
    setup_logging()
    setup_tracing()
    bind_context(invocation="reaper", invocation_id=uuid4().hex[:12])

    try:
        async with get_store_client() as store:
            return await Reaper(build_services(store)).run_once()
    finally:
        clear_context()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
