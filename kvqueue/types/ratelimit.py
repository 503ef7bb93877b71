"""
Rate limiter type definitions.
"""

from pydantic import BaseModel, Field

from kvqueue.constants import UserTier


class RateLimitConfig(BaseModel):
    """Rate limit policy for one class of endpoint."""

    max_requests: int
    window_seconds: int
    burst_allowance: int = 0
    block_duration_seconds: int = 0
    tier_multipliers: dict[UserTier, float] = Field(
        default_factory=lambda: {
            UserTier.FREE: 1.0,
            UserTier.PRO: 1.0,
            UserTier.ENTERPRISE: 1.0,
        }
    )

    def multiplier_for(self, tier: UserTier | str | None) -> float:
        """Tier multiplier, falling back to the free tier."""
        if tier is None:
            return self.tier_multipliers.get(UserTier.FREE, 1.0)
        try:
            return self.tier_multipliers.get(UserTier(tier), 1.0)
        except ValueError:
            return self.tier_multipliers.get(UserTier.FREE, 1.0)


class RateLimitResult(BaseModel):
    """Decision returned by the rate limiter."""

    allowed: bool
    remaining: int
    reset_at: int
    limit: int
    blocked: bool = False
    retry_after: int = 0
