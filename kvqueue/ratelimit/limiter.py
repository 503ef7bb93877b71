"""
Adaptive rate limiter over fixed-window counters in the backing store.

Limits scale with the caller's tier, authenticated callers get a burst
allowance on top, and callers that exceed twice their limit in a window
are blocked outright for a while. If the store is unreachable the limiter
fails open.
"""

import hashlib
import logging
import math
import time
from collections.abc import Callable

from kvqueue.constants import (
    KEY_BLOCKED_PREFIX,
    KEY_BURST_LIMIT_PREFIX,
    KEY_RATE_LIMIT_PREFIX,
    UserTier,
)
from kvqueue.observability.metrics import get_metrics
from kvqueue.store.client import StoreClient, StoreError
from kvqueue.types.ratelimit import RateLimitConfig, RateLimitResult

logger = logging.getLogger(__name__)


PRESETS: dict[str, RateLimitConfig] = {
    "auth": RateLimitConfig(
        max_requests=5,
        window_seconds=15 * 60,
        block_duration_seconds=30 * 60,
        tier_multipliers={UserTier.FREE: 1, UserTier.PRO: 2, UserTier.ENTERPRISE: 5},
    ),
    "analysis": RateLimitConfig(
        max_requests=10,
        window_seconds=60,
        burst_allowance=5,
        block_duration_seconds=5 * 60,
        tier_multipliers={UserTier.FREE: 1, UserTier.PRO: 5, UserTier.ENTERPRISE: 10},
    ),
    "api": RateLimitConfig(
        max_requests=50,
        window_seconds=60,
        burst_allowance=20,
        block_duration_seconds=2 * 60,
        tier_multipliers={UserTier.FREE: 1, UserTier.PRO: 4, UserTier.ENTERPRISE: 10},
    ),
    "general": RateLimitConfig(
        max_requests=100,
        window_seconds=60,
        burst_allowance=10,
        block_duration_seconds=5 * 60,
        tier_multipliers={UserTier.FREE: 1, UserTier.PRO: 3, UserTier.ENTERPRISE: 5},
    ),
}


def get_preset(name: str) -> RateLimitConfig:
    """
    Look up a named rate limit preset.

    Raises:
        KeyError: If no preset has that name.
    """
    return PRESETS[name]


def resolve_identifier(
    user_id: str | None = None,
    api_key: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> str:
    """
    Pick the identity a request is limited under.

    Priority: authenticated user id, then the API key's last 8 characters,
    then the client IP plus a short user-agent fingerprint so anonymous
    clients behind one address are still told apart.
    """
    if user_id:
        return f"user:{user_id}"
    if api_key:
        return f"apikey:{api_key[-8:]}"

    identifier = f"ip:{ip or 'unknown'}"
    if user_agent:
        fingerprint = hashlib.sha256(user_agent.encode("utf-8")).hexdigest()[:8]
        identifier = f"{identifier}:{fingerprint}"
    return identifier


class AdaptiveRateLimiter:
    """
    Per-identifier rate limiter.

    Each check costs a handful of single-key store operations; no state is
    kept in process.
    """

    def __init__(
        self,
        store: StoreClient,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the rate limiter.

        Args:
            store: Open store client.
            clock: Returns the current time in seconds.
        """
        self.store = store
        self._clock = clock
        self._metrics = get_metrics()

    @staticmethod
    def _keys(identifier: str, config: RateLimitConfig) -> tuple[str, str, str]:
        window = config.window_seconds
        return (
            f"{KEY_RATE_LIMIT_PREFIX}{window}:{identifier}",
            f"{KEY_BURST_LIMIT_PREFIX}{window}:{identifier}",
            f"{KEY_BLOCKED_PREFIX}{identifier}",
        )

    async def check(
        self,
        identifier: str,
        tier_multiplier: float,
        config: RateLimitConfig,
        authenticated: bool | None = None,
    ) -> RateLimitResult:
        """
        Count a request and decide whether it may proceed.

        Args:
            identifier: Caller identity (see ``resolve_identifier``).
            tier_multiplier: Scales ``config.max_requests``.
            config: Limit policy.
            authenticated: Whether the burst allowance applies. Defaults
                to True for ``user:`` identifiers.

        Returns:
            RateLimitResult with ``reset_at`` in epoch milliseconds.
        """
        if authenticated is None:
            authenticated = identifier.startswith("user:")

        now = int(self._clock() * 1000)
        effective_limit = max(1, math.floor(config.max_requests * tier_multiplier))
        counter_key, burst_key, block_key = self._keys(identifier, config)

        try:
            if await self.store.exists(block_key):
                ttl = await self.store.ttl(block_key)
                reset_at = now + max(ttl, 0) * 1000
                self._metrics.record_rate_limit("blocked")
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    limit=effective_limit,
                    blocked=True,
                    retry_after=max(ttl, 1),
                )

            count = await self.store.incr(counter_key)
            if count == 1:
                await self.store.expire(counter_key, config.window_seconds)

            allowance = 0
            burst_used = 0
            if authenticated and config.burst_allowance:
                allowance = config.burst_allowance
                burst_used = int(await self.store.get(burst_key) or 0)

            ttl = await self.store.ttl(counter_key)
            window_left = ttl if ttl > 0 else config.window_seconds
            reset_at = now + window_left * 1000

            if count + burst_used > effective_limit + allowance:
                blocked = False
                if count > 2 * effective_limit and config.block_duration_seconds:
                    await self.store.set(block_key, "1", ex=config.block_duration_seconds)
                    blocked = True
                    logger.warning(
                        "Identifier blocked for abuse",
                        extra={
                            "identifier": identifier,
                            "count": count,
                            "block_seconds": config.block_duration_seconds,
                        },
                    )

                self._metrics.record_rate_limit("blocked" if blocked else "denied")
                retry_after = config.block_duration_seconds if blocked else window_left
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=now + retry_after * 1000,
                    limit=effective_limit,
                    blocked=blocked,
                    retry_after=retry_after,
                )

            if count > effective_limit and allowance:
                if await self.store.incr(burst_key) == 1:
                    await self.store.expire(burst_key, config.window_seconds)

            self._metrics.record_rate_limit("allowed")
            return RateLimitResult(
                allowed=True,
                remaining=max(0, effective_limit - count),
                reset_at=reset_at,
                limit=effective_limit,
            )

        except StoreError as e:
            logger.warning(
                "Rate limiting failed, allowing request",
                extra={"identifier": identifier, "error": str(e)},
            )
            self._metrics.record_rate_limit("fail_open")
            return RateLimitResult(
                allowed=True,
                remaining=effective_limit,
                reset_at=now + config.window_seconds * 1000,
                limit=effective_limit,
            )

    async def reset(self, identifier: str, config: RateLimitConfig) -> bool:
        """
        Clear an identifier's counters and block.

        Returns:
            True if the keys were cleared.
        """
        try:
            await self.store.delete(*self._keys(identifier, config))
            return True
        except StoreError as e:
            logger.warning(
                "Failed to reset rate limit",
                extra={"identifier": identifier, "error": str(e)},
            )
            return False
