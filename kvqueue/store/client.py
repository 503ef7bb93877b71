"""
Typed client for an Upstash-compatible Redis REST API.

Every command is a single HTTP POST carrying the command as a JSON array,
authenticated with a bearer token. The remote store gives single-key
atomicity only; nothing here pretends otherwise. A client is meant to live
for one invocation: open it with ``async with`` and let it close when the
invocation ends.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import httpx

from kvqueue.config import get_settings

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for backing store failures."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or answered with a non-2xx status."""


class StoreCommandError(StoreError):
    """The store rejected a command (``{"error": ...}`` reply)."""


def _encode_arg(value: Any) -> str:
    """Encode one command argument the way the REST API expects it."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, default=str)


def _flatten_mapping(mapping: Mapping[str, Any]) -> list[str]:
    """Flatten a mapping into ``[field, value, field, value, ...]``."""
    flat: list[str] = []
    for field, value in mapping.items():
        flat.append(str(field))
        flat.append(_encode_arg(value))
    return flat


def _pairs(values: Sequence[Any]) -> list[tuple[str, str]]:
    """Group a flat reply list into ``(a, b)`` pairs."""
    return [(values[i], values[i + 1]) for i in range(0, len(values) - 1, 2)]


class StoreClient:
    """
    Async facade over the remote store's primitive operations.

    The client can be used as an async context manager, in which case one
    HTTP connection pool is shared by all commands issued inside the block.
    Outside a context, each command opens and closes its own client.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the store client.

        Args:
            base_url: REST endpoint of the store. Defaults to settings.
            token: Bearer token. Defaults to settings.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        settings = get_settings()
        self.base_url = (base_url or settings.upstash_redis_rest_url).rstrip("/")
        self._token = token or settings.upstash_redis_rest_token
        self._timeout = timeout or settings.store_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def headers(self) -> dict[str, str]:
        """Authorization headers for the REST API."""
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def __aenter__(self) -> "StoreClient":
        self._client = self._new_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client, if one is open."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, body: Any) -> Any:
        try:
            if self._client is not None:
                response = await self._client.post(path, json=body)
            else:
                async with self._new_client() as client:
                    response = await client.post(path, json=body)
        except httpx.HTTPError as e:
            logger.warning(
                "Store request failed",
                extra={"path": path, "error": str(e)},
            )
            raise StoreUnavailableError(f"Store request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        # A rejected command comes back as 400 with an error body; anything
        # else outside 2xx means the store itself is not serving us
        if response.status_code == 400 and isinstance(body, dict) and "error" in body:
            return body
        if not response.is_success:
            raise StoreUnavailableError(f"Store returned HTTP {response.status_code}")
        if body is None:
            raise StoreUnavailableError("Store returned a non-JSON body")
        return body

    async def execute(self, *command: Any) -> Any:
        """
        Execute a single command.

        Args:
            *command: Command name followed by its arguments.

        Returns:
            The ``result`` field of the reply.

        Raises:
            StoreUnavailableError: On transport errors.
            StoreCommandError: If the store rejected the command.
        """
        payload = [_encode_arg(part) for part in command]
        reply = await self._post("/", payload)

        if isinstance(reply, dict) and "error" in reply:
            raise StoreCommandError(f"{command[0]}: {reply['error']}")
        if not isinstance(reply, dict):
            raise StoreCommandError(f"{command[0]}: unexpected reply {reply!r}")
        return reply.get("result")

    async def pipeline(self, commands: Sequence[Sequence[Any]]) -> list[Any]:
        """
        Send several independent commands in one round trip.

        The commands are not atomic as a group; each is applied on its own.

        Args:
            commands: List of command arrays.

        Returns:
            One result per command, in order.

        Raises:
            StoreCommandError: If any command was rejected.
        """
        if not commands:
            return []

        payload = [[_encode_arg(part) for part in command] for command in commands]
        replies = await self._post("/pipeline", payload)

        if not isinstance(replies, list):
            raise StoreCommandError(f"pipeline: unexpected reply {replies!r}")

        results: list[Any] = []
        for command, reply in zip(commands, replies):
            if "error" in reply:
                raise StoreCommandError(f"{command[0]}: {reply['error']}")
            results.append(reply.get("result"))
        return results

    # ========================================================================
    # Keys and strings
    # ========================================================================

    async def ping(self) -> bool:
        return await self.execute("PING") == "PONG"

    async def get(self, key: str) -> str | None:
        return await self.execute("GET", key)

    async def set(
        self,
        key: str,
        value: Any,
        ex: int | None = None,
        px: int | None = None,
        nx: bool = False,
        xx: bool = False,
        keepttl: bool = False,
    ) -> bool:
        """
        SET with the usual modifiers.

        Returns:
            True if the value was written, False if NX/XX prevented it.
        """
        command: list[Any] = ["SET", key, value]
        if ex is not None:
            command += ["EX", int(ex)]
        if px is not None:
            command += ["PX", int(px)]
        if nx:
            command.append("NX")
        if xx:
            command.append("XX")
        if keepttl:
            command.append("KEEPTTL")
        return await self.execute(*command) == "OK"

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.execute("DEL", *keys))

    async def exists(self, *keys: str) -> int:
        return int(await self.execute("EXISTS", *keys))

    async def expire(self, key: str, seconds: int) -> bool:
        return int(await self.execute("EXPIRE", key, int(seconds))) == 1

    async def ttl(self, key: str) -> int:
        return int(await self.execute("TTL", key))

    async def incr(self, key: str) -> int:
        return int(await self.execute("INCR", key))

    async def incrby(self, key: str, amount: int) -> int:
        return int(await self.execute("INCRBY", key, int(amount)))

    async def decr(self, key: str) -> int:
        return int(await self.execute("DECR", key))

    async def scan_iter(self, match: str = "*", count: int = 100) -> AsyncIterator[str]:
        """Iterate over keys matching a glob pattern using SCAN."""
        cursor = "0"
        while True:
            reply = await self.execute("SCAN", cursor, "MATCH", match, "COUNT", count)
            cursor, keys = str(reply[0]), reply[1]
            for key in keys:
                yield key
            if cursor == "0":
                break

    # ========================================================================
    # Lists
    # ========================================================================

    async def lpush(self, key: str, *values: Any) -> int:
        return int(await self.execute("LPUSH", key, *values))

    async def rpush(self, key: str, *values: Any) -> int:
        return int(await self.execute("RPUSH", key, *values))

    async def rpop(self, key: str) -> str | None:
        return await self.execute("RPOP", key)

    async def llen(self, key: str) -> int:
        return int(await self.execute("LLEN", key))

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self.execute("LRANGE", key, start, stop) or [])

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return await self.execute("LTRIM", key, start, stop) == "OK"

    async def lrem(self, key: str, count: int, value: Any) -> int:
        return int(await self.execute("LREM", key, count, value))

    # ========================================================================
    # Sorted sets
    # ========================================================================

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        command: list[Any] = ["ZADD", key]
        for member, score in mapping.items():
            command += [score, member]
        return int(await self.execute(*command))

    async def zrangebyscore(
        self,
        key: str,
        min_score: float | str,
        max_score: float | str,
        withscores: bool = False,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str] | list[tuple[str, float]]:
        command: list[Any] = ["ZRANGEBYSCORE", key, min_score, max_score]
        if withscores:
            command.append("WITHSCORES")
        if count is not None:
            command += ["LIMIT", offset or 0, count]
        reply = await self.execute(*command) or []
        if withscores:
            return [(member, float(score)) for member, score in _pairs(reply)]
        return list(reply)

    async def zrange(
        self,
        key: str,
        start: int,
        stop: int,
        withscores: bool = False,
    ) -> list[str] | list[tuple[str, float]]:
        command: list[Any] = ["ZRANGE", key, start, stop]
        if withscores:
            command.append("WITHSCORES")
        reply = await self.execute(*command) or []
        if withscores:
            return [(member, float(score)) for member, score in _pairs(reply)]
        return list(reply)

    async def zscore(self, key: str, member: str) -> float | None:
        score = await self.execute("ZSCORE", key, member)
        return None if score is None else float(score)

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.execute("ZREM", key, *members))

    async def zcard(self, key: str) -> int:
        return int(await self.execute("ZCARD", key))

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        return int(await self.execute("ZREMRANGEBYRANK", key, start, stop))

    # ========================================================================
    # Hashes
    # ========================================================================

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> int:
        """Set several hash fields. Non-string values are JSON encoded."""
        return int(await self.execute("HSET", key, *_flatten_mapping(mapping)))

    async def hget(self, key: str, field: str) -> str | None:
        return await self.execute("HGET", key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        reply = await self.execute("HGETALL", key) or []
        return dict(_pairs(reply))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self.execute("HINCRBY", key, field, int(amount)))

    async def hdel(self, key: str, *fields: str) -> int:
        return int(await self.execute("HDEL", key, *fields))

    # ========================================================================
    # Sets
    # ========================================================================

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.execute("SADD", key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.execute("SREM", key, *members))

    async def smembers(self, key: str) -> set[str]:
        return set(await self.execute("SMEMBERS", key) or [])

    async def scard(self, key: str) -> int:
        return int(await self.execute("SCARD", key))


def get_store_client(transport: httpx.AsyncBaseTransport | None = None) -> StoreClient:
    """
    Create a store client from application settings.

    Args:
        transport: Optional httpx transport override.

    Returns:
        A new, unopened StoreClient.
    """
    return StoreClient(transport=transport)
