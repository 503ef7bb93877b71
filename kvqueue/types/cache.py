"""
Tagged cache type definitions.
"""

from typing import Any

from pydantic import BaseModel, Field

from kvqueue.constants import CachePriority


class CacheEntry(BaseModel):
    """A cached value with its bookkeeping."""

    key: str
    value: Any = None
    ttl: int
    priority: CachePriority = CachePriority.NORMAL
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: int
    access_count: int = 0
    last_access: int


class CacheStats(BaseModel):
    """Cache operation counters and derived hit rate."""

    operations: dict[str, int] = Field(default_factory=dict)
    size: dict[str, int] = Field(default_factory=dict)
    hit_rate: float = 0.0
    last_cleanup: dict[str, str] = Field(default_factory=dict)


class ReconcileResult(BaseModel):
    """Outcome of an index reconciliation pass."""

    tags_scanned: int = 0
    empty_tags_removed: int = 0
    errors: list[str] = Field(default_factory=list)
