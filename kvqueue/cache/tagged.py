"""
Tagged cache with priority and tag indexes for bulk invalidation.

Key layout:

- ``cache:{key}``                    JSON CacheEntry, expiring with its TTL
- ``cache-index:priority:{p}``       sorted set of keys, scored by insert time
- ``cache-tags:{tag}``               set of keys carrying the tag
- ``cache-tags:registry``            set of tag names, walked by ``reconcile``
- ``cache-stats:operations|size|cleanup``  hashes of counters

Index keys expire ``ttl + grace`` after the newest entry written to them,
so they may briefly outlast their entries but never outlive the longest
one. Readers tolerate index members whose entry already expired.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from kvqueue.config import get_settings
from kvqueue.constants import (
    DEFAULT_CACHE_PRIORITY,
    KEY_CACHE_PREFIX,
    KEY_CACHE_PRIORITY_PREFIX,
    KEY_CACHE_STATS_CLEANUP,
    KEY_CACHE_STATS_OPERATIONS,
    KEY_CACHE_STATS_SIZE,
    KEY_CACHE_TAG_PREFIX,
    KEY_CACHE_TAG_REGISTRY,
    CachePriority,
)
from kvqueue.observability.metrics import get_metrics
from kvqueue.store.client import StoreClient, StoreError
from kvqueue.store.serialization import DeserializationError, deserialize, serialize
from kvqueue.types.cache import CacheEntry, CacheStats, ReconcileResult

logger = logging.getLogger(__name__)


def entry_key(key: str) -> str:
    return f"{KEY_CACHE_PREFIX}{key}"


def priority_key(priority: CachePriority | str) -> str:
    return f"{KEY_CACHE_PRIORITY_PREFIX}{priority}"


def tag_key(tag: str) -> str:
    return f"{KEY_CACHE_TAG_PREFIX}{tag}"


class TaggedCache:
    """
    Cache facade used from request-handling code.

    All operations are best-effort: a store failure counts as a miss (or a
    no-op) and is logged, never raised.
    """

    def __init__(
        self,
        store: StoreClient,
        clock: Callable[[], float] = time.time,
        default_ttl_seconds: int | None = None,
        index_grace_seconds: int | None = None,
    ):
        settings = get_settings()
        self.store = store
        self._clock = clock
        self.default_ttl = default_ttl_seconds or settings.cache_default_ttl_seconds
        self.index_grace = (
            index_grace_seconds
            if index_grace_seconds is not None
            else settings.cache_index_grace_seconds
        )
        self._metrics = get_metrics()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _stat(self, operation: str, amount: int = 1) -> None:
        self._metrics.record_cache_operation(operation)
        try:
            await self.store.hincrby(KEY_CACHE_STATS_OPERATIONS, operation, amount)
        except StoreError as e:
            logger.debug("Failed to update cache stats", extra={"error": str(e)})

    async def _read_entry(self, key: str) -> CacheEntry | None:
        raw = await self.store.get(entry_key(key))
        if raw is None:
            return None
        decoded = deserialize(raw, CacheEntry)
        if isinstance(decoded, DeserializationError):
            logger.warning(
                "Malformed cache entry",
                extra={"key": key, "error": decoded.error},
            )
            return None
        return decoded.value

    async def _extend_index_ttl(self, index: str, ttl: int) -> None:
        current = await self.store.ttl(index)
        if current < ttl:
            await self.store.expire(index, ttl)

    async def _drop_from_indexes(
        self,
        key: str,
        priority: CachePriority | str | None,
        tags: list[str],
    ) -> None:
        priorities = [priority] if priority else list(CachePriority)
        for p in priorities:
            await self.store.zrem(priority_key(p), key)
        for tag in tags:
            await self.store.srem(tag_key(tag), key)

    # ========================================================================
    # Writes
    # ========================================================================

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        priority: CachePriority = DEFAULT_CACHE_PRIORITY,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Store a value and index it by priority and tags.

        Args:
            key: Cache key.
            value: JSON-compatible value.
            ttl: Lifetime in seconds; defaults to the configured TTL.
            priority: Priority index to place the key in.
            tags: Tags for bulk lookup and invalidation.
            metadata: Free-form metadata stored with the entry.

        Returns:
            True if the entry was written.
        """
        ttl = ttl or self.default_ttl
        tags = sorted(set(tags or []))
        now = self.now_ms()

        entry = CacheEntry(
            key=key,
            value=value,
            ttl=ttl,
            priority=priority,
            tags=tags,
            metadata=metadata or {},
            created_at=now,
            last_access=now,
        )

        try:
            previous = await self._read_entry(key)
            await self.store.set(entry_key(key), serialize(entry), ex=ttl)

            if previous is not None:
                stale_tags = [t for t in previous.tags if t not in tags]
                stale_priority = previous.priority if previous.priority != priority else None
                if stale_priority:
                    await self.store.zrem(priority_key(stale_priority), key)
                    await self.store.hincrby(KEY_CACHE_STATS_SIZE, stale_priority, -1)
                    await self.store.hincrby(KEY_CACHE_STATS_SIZE, priority, 1)
                for tag in stale_tags:
                    await self.store.srem(tag_key(tag), key)

            index_ttl = ttl + self.index_grace
            await self.store.zadd(priority_key(priority), {key: now})
            await self._extend_index_ttl(priority_key(priority), index_ttl)

            for tag in tags:
                await self.store.sadd(tag_key(tag), key)
                await self._extend_index_ttl(tag_key(tag), index_ttl)
            if tags:
                await self.store.sadd(KEY_CACHE_TAG_REGISTRY, *tags)

            if previous is None:
                await self.store.hincrby(KEY_CACHE_STATS_SIZE, priority, 1)
        except StoreError as e:
            logger.warning("Cache set failed", extra={"key": key, "error": str(e)})
            await self._stat("errors")
            return False

        await self._stat("sets")
        return True

    async def delete(self, key: str) -> bool:
        """
        Remove an entry and its index memberships.

        Returns:
            True if an entry was deleted.
        """
        try:
            entry = await self._read_entry(key)
            deleted = await self.store.delete(entry_key(key))
            if entry is not None:
                await self._drop_from_indexes(key, entry.priority, entry.tags)
                await self.store.hincrby(KEY_CACHE_STATS_SIZE, entry.priority, -1)
            else:
                await self._drop_from_indexes(key, None, [])
        except StoreError as e:
            logger.warning("Cache delete failed", extra={"key": key, "error": str(e)})
            await self._stat("errors")
            return False

        if deleted:
            await self._stat("deletes")
        return deleted > 0

    async def clear(self, pattern: str = "*") -> int:
        """
        Delete every entry whose key matches a glob pattern.

        Each matched entry is read first so its index memberships can be
        removed too.

        Returns:
            Number of entries deleted.
        """
        removed = 0
        try:
            keys = [key async for key in self.store.scan_iter(match=entry_key(pattern))]
            for full_key in keys:
                key = full_key[len(KEY_CACHE_PREFIX):]
                entry = await self._read_entry(key)
                if await self.store.delete(full_key):
                    removed += 1
                if entry is not None:
                    await self._drop_from_indexes(key, entry.priority, entry.tags)
                    await self.store.hincrby(KEY_CACHE_STATS_SIZE, entry.priority, -1)
        except StoreError as e:
            logger.warning(
                "Cache clear failed",
                extra={"pattern": pattern, "error": str(e)},
            )
            await self._stat("errors")

        if removed:
            await self._stat("bulk_deletes", removed)
        logger.info(f"Cleared {removed} cache entries", extra={"pattern": pattern})
        return removed

    # ========================================================================
    # Reads
    # ========================================================================

    async def get(self, key: str) -> Any | None:
        """
        Read a value.

        A hit bumps the entry's access counters without touching its TTL.

        Returns:
            The cached value, or None on a miss.
        """
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Read a full entry, counting a hit or a miss."""
        try:
            entry = await self._read_entry(key)
            if entry is None:
                await self._stat("misses")
                return None

            entry = entry.model_copy(
                update={
                    "access_count": entry.access_count + 1,
                    "last_access": self.now_ms(),
                }
            )
            # XX + KEEPTTL: never recreate an expired entry, never extend it
            await self.store.set(entry_key(key), serialize(entry), xx=True, keepttl=True)
        except StoreError as e:
            logger.warning("Cache get failed", extra={"key": key, "error": str(e)})
            await self._stat("errors")
            return None

        await self._stat("hits")
        return entry

    async def exists(self, key: str) -> bool:
        try:
            return await self.store.exists(entry_key(key)) > 0
        except StoreError as e:
            logger.warning("Cache exists failed", extra={"key": key, "error": str(e)})
            return False

    async def get_by_tags(self, tags: list[str]) -> list[CacheEntry]:
        """
        Fetch every live entry carrying any of the given tags.

        Index members whose entry expired, or whose entry no longer carries
        the tag, are skipped.
        """
        wanted = set(tags)
        entries: list[CacheEntry] = []
        try:
            keys: set[str] = set()
            for tag in wanted:
                keys |= await self.store.smembers(tag_key(tag))

            for key in sorted(keys):
                entry = await self._read_entry(key)
                if entry is not None and wanted.intersection(entry.tags):
                    entries.append(entry)
        except StoreError as e:
            logger.warning("Cache tag lookup failed", extra={"tags": tags, "error": str(e)})
            await self._stat("errors")
            return []

        return entries

    async def get_stats(self) -> CacheStats:
        """Operation counters, per-priority sizes and the last cleanup run."""
        try:
            operations, size, cleanup = await self.store.pipeline(
                [
                    ["HGETALL", KEY_CACHE_STATS_OPERATIONS],
                    ["HGETALL", KEY_CACHE_STATS_SIZE],
                    ["HGETALL", KEY_CACHE_STATS_CLEANUP],
                ]
            )
        except StoreError as e:
            logger.warning("Failed to read cache stats", extra={"error": str(e)})
            return CacheStats()

        def to_dict(flat: list[str] | None) -> dict[str, str]:
            flat = flat or []
            return {flat[i]: flat[i + 1] for i in range(0, len(flat) - 1, 2)}

        ops = {k: int(v) for k, v in to_dict(operations).items()}
        hits = ops.get("hits", 0)
        misses = ops.get("misses", 0)
        lookups = hits + misses

        return CacheStats(
            operations=ops,
            size={k: max(0, int(v)) for k, v in to_dict(size).items()},
            hit_rate=hits / lookups if lookups else 0.0,
            last_cleanup=to_dict(cleanup),
        )

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def reconcile(self) -> ReconcileResult:
        """
        Drop tag indexes that no longer have members.

        Indexes that still hold only expired keys are left alone; readers
        already skip those members.
        """
        result = ReconcileResult()
        try:
            for tag in sorted(await self.store.smembers(KEY_CACHE_TAG_REGISTRY)):
                result.tags_scanned += 1
                try:
                    if await self.store.scard(tag_key(tag)) == 0:
                        await self.store.delete(tag_key(tag))
                        await self.store.srem(KEY_CACHE_TAG_REGISTRY, tag)
                        result.empty_tags_removed += 1
                except StoreError as e:
                    result.errors.append(f"{tag}: {e}")

            await self.store.hset(
                KEY_CACHE_STATS_CLEANUP,
                {
                    "last_run": self.now_ms(),
                    "tags_scanned": result.tags_scanned,
                    "empty_tags_removed": result.empty_tags_removed,
                },
            )
        except StoreError as e:
            logger.warning("Cache reconcile failed", extra={"error": str(e)})
            result.errors.append(str(e))

        logger.info(
            f"Cache reconcile removed {result.empty_tags_removed} empty tag indexes",
            extra={"tags_scanned": result.tags_scanned},
        )
        return result
