"""
Rate limiting dependency backed by the adaptive limiter.
"""

import logging
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request, Response, status

from kvqueue.api.auth import OptionalUser
from kvqueue.api.dependencies import ServicesDep
from kvqueue.constants import (
    API_KEY_HEADER,
    RATE_LIMIT_HEADER_LIMIT,
    RATE_LIMIT_HEADER_REMAINING,
    RATE_LIMIT_HEADER_RESET,
)
from kvqueue.ratelimit.limiter import get_preset, resolve_identifier
from kvqueue.types.ratelimit import RateLimitResult

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str | None:
    """First address of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Response headers describing a rate limit decision."""
    return {
        RATE_LIMIT_HEADER_LIMIT: str(result.limit),
        RATE_LIMIT_HEADER_REMAINING: str(result.remaining),
        RATE_LIMIT_HEADER_RESET: str(result.reset_at),
    }


def rate_limit(preset: str) -> Callable[..., Awaitable[RateLimitResult]]:
    """
    Build a dependency enforcing a named rate limit preset.

    Args:
        preset: Preset name (``auth``, ``analysis``, ``api``, ``general``).

    Returns:
        Dependency that raises 429 when the caller is over the limit and
        sets the ``X-RateLimit-*`` headers otherwise.
    """
    config = get_preset(preset)

    async def dependency(
        request: Request,
        response: Response,
        services: ServicesDep,
        user: OptionalUser,
    ) -> RateLimitResult:
        identifier = resolve_identifier(
            user_id=user.user_id if user else None,
            api_key=request.headers.get(API_KEY_HEADER),
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        result = await services.limiter.check(
            identifier,
            config.multiplier_for(user.plan if user else None),
            config,
            authenticated=user is not None,
        )
        headers = rate_limit_headers(result)

        if not result.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"identifier": identifier, "preset": preset, "blocked": result.blocked},
            )
            detail = (
                "Rate limit exceeded. Access temporarily blocked."
                if result.blocked
                else "Rate limit exceeded"
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=detail,
                headers={**headers, "Retry-After": str(max(result.retry_after, 1))},
            )

        response.headers.update(headers)
        return result

    return dependency
