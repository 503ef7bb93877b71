"""
Rate limiting module.
"""

from kvqueue.ratelimit.limiter import (
    PRESETS,
    AdaptiveRateLimiter,
    get_preset,
    resolve_identifier,
)

__all__ = ["AdaptiveRateLimiter", "PRESETS", "get_preset", "resolve_identifier"]
