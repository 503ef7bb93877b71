"""
Processor registry and built-in processors.

Processors may run more than once for the same job (at-least-once
delivery), so they must be idempotent or tolerate duplicates.
"""

import logging
from collections.abc import Callable

import httpx

from kvqueue.queue.engine import Processor
from kvqueue.types.job import Job, JobResult

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10.0

# Processor registry, keyed by queue name
_processors: dict[str, Processor] = {}


def register_processor(queue_name: str) -> Callable[[Processor], Processor]:
    """
    Decorator to register the processor for a queue.

    Args:
        queue_name: The queue this processor drains.

    Returns:
        Decorator function.

    Example:
        @register_processor("email")
        async def send_email(job: Job) -> JobResult:
            ...
    """
    def decorator(processor: Processor) -> Processor:
        _processors[queue_name] = processor
        logger.info(f"Registered processor for queue: {queue_name}")
        return processor
    return decorator


def get_processor(queue_name: str) -> Processor | None:
    """Get the processor for a queue, or None if none is registered."""
    return _processors.get(queue_name)


def list_processors() -> list[str]:
    """List queues that have a registered processor."""
    return sorted(_processors)


# ============================================================================
# Built-in processors
# ============================================================================


@register_processor("echo")
async def process_echo(job: Job) -> JobResult:
    """Return the payload unchanged. Useful for smoke tests."""
    logger.info(
        "Echo job executing",
        extra={"job_id": job.id, "retry_count": job.retry_count},
    )
    return JobResult(success=True, output={"echo": job.payload})


@register_processor("webhook")
async def process_webhook(job: Job) -> JobResult:
    """
    POST a JSON body to a URL.

    Payload should contain:
    - url: Target URL
    - body: Optional JSON body
    - headers: Optional extra headers

    Non-2xx responses are failures and will be retried through the DLQ.
    """
    payload = job.payload if isinstance(job.payload, dict) else {}
    url = payload.get("url")
    if not url:
        return JobResult(success=False, error="Missing 'url' in payload")

    headers = dict(payload.get("headers") or {})
    headers.setdefault("X-Job-Id", job.id)

    async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
        response = await client.post(url, json=payload.get("body"), headers=headers)

    logger.info(
        "Webhook delivered",
        extra={"job_id": job.id, "url": url, "status_code": response.status_code},
    )
    return JobResult(
        success=response.is_success,
        output={"status_code": response.status_code, "body": response.text[:1000]},
        error=None if response.is_success else f"HTTP {response.status_code}",
    )
