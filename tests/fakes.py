"""
In-memory stand-ins for the backing store and the clock.

``InMemoryUpstash`` speaks the REST protocol the store client uses (single
commands on ``/`` and batches on ``/pipeline``) and is mounted on an
``httpx.MockTransport``, so tests exercise the real client end to end.
Key expiry follows the shared ``FakeClock``.
"""

import fnmatch
import json
import math
from collections.abc import Callable
from typing import Any

import httpx


class FakeClock:
    """Controllable time source in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CommandError(Exception):
    """Rejected command, reported as ``{"error": ...}``."""


class _ZSet(dict):
    """member -> score"""


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _parse_bound(raw: str) -> tuple[float, bool]:
    exclusive = raw.startswith("(")
    raw = raw[1:] if exclusive else raw
    if raw in ("-inf", "+inf", "inf"):
        return (-math.inf if raw == "-inf" else math.inf), exclusive
    return float(raw), exclusive


def _slice(length: int, start: int, stop: int) -> tuple[int, int]:
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    stop = min(stop, length - 1)
    return start, stop


class InMemoryUpstash:
    """
    Minimal Redis REST server covering the commands this project issues.

    Set ``fail = True`` to answer every request with HTTP 503, or use
    :meth:`fail_once` to reject a single matching command.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: dict[str, Any] = {}
        self.expiry: dict[str, float] = {}
        self.fail = False
        self.commands: list[list[str]] = []
        self._one_shot_failures: list[Callable[[list[str]], bool]] = []

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(503, json={"error": "service unavailable"})

        body = json.loads(request.content)
        if request.url.path.rstrip("/").endswith("pipeline"):
            return httpx.Response(200, json=[self._reply(command) for command in body])
        return httpx.Response(200, json=self._reply(body))

    def fail_once(self, matches: Callable[[list[str]], bool]) -> None:
        """Reject the next command for which ``matches`` is true."""
        self._one_shot_failures.append(matches)

    def _reply(self, command: list[str]) -> dict[str, Any]:
        self.commands.append(command)
        for matches in self._one_shot_failures:
            if matches(command):
                self._one_shot_failures.remove(matches)
                return {"error": "ERR injected failure"}
        try:
            return {"result": self.execute(command)}
        except CommandError as e:
            return {"error": str(e)}

    # ------------------------------------------------------------------
    # Keyspace helpers
    # ------------------------------------------------------------------

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def _get(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            return None
        value = self.data[key]
        if type(value) is not kind:
            raise CommandError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def _get_or_create(self, key: str, kind: type) -> Any:
        value = self._get(key, kind)
        if value is None:
            value = kind()
            self.data[key] = value
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self.data and not self.data[key]:
            self.data.pop(key)
            self.expiry.pop(key, None)

    def _delete(self, key: str) -> bool:
        alive = self._alive(key)
        self.data.pop(key, None)
        self.expiry.pop(key, None)
        return alive

    def keys(self, pattern: str = "*") -> list[str]:
        return sorted(k for k in list(self.data) if self._alive(k) and fnmatch.fnmatchcase(k, pattern))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def execute(self, command: list[str]) -> Any:
        name, *args = command
        handler = getattr(self, f"cmd_{name.lower()}", None)
        if handler is None:
            raise CommandError(f"ERR unknown command '{name}'")
        return handler(*args)

    def cmd_ping(self) -> str:
        return "PONG"

    def cmd_get(self, key: str) -> str | None:
        return self._get(key, str)

    def cmd_set(self, key: str, value: str, *options: str) -> str | None:
        opts = [o.upper() for o in options]
        exists = self._alive(key)
        if "NX" in opts and exists:
            return None
        if "XX" in opts and not exists:
            return None

        self.data[key] = value
        if "EX" in opts:
            self.expiry[key] = self.clock() + int(options[opts.index("EX") + 1])
        elif "PX" in opts:
            self.expiry[key] = self.clock() + int(options[opts.index("PX") + 1]) / 1000
        elif "KEEPTTL" not in opts:
            self.expiry.pop(key, None)
        return "OK"

    def cmd_del(self, *keys: str) -> int:
        return sum(1 for key in keys if self._delete(key))

    def cmd_exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    def cmd_expire(self, key: str, seconds: str) -> int:
        if not self._alive(key):
            return 0
        self.expiry[key] = self.clock() + int(seconds)
        return 1

    def cmd_ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return math.ceil(self.expiry[key] - self.clock())

    def cmd_incrby(self, key: str, amount: str) -> int:
        current = self._get(key, str)
        try:
            value = int(current or 0) + int(amount)
        except ValueError as e:
            raise CommandError("ERR value is not an integer or out of range") from e
        self.data[key] = str(value)
        return value

    def cmd_incr(self, key: str) -> int:
        return self.cmd_incrby(key, "1")

    def cmd_decr(self, key: str) -> int:
        return self.cmd_incrby(key, "-1")

    def cmd_scan(self, cursor: str, *options: str) -> list[Any]:
        opts = [o.upper() for o in options]
        pattern = options[opts.index("MATCH") + 1] if "MATCH" in opts else "*"
        return ["0", self.keys(pattern)]

    # Lists

    def cmd_lpush(self, key: str, *values: str) -> int:
        items = self._get_or_create(key, list)
        for value in values:
            items.insert(0, value)
        return len(items)

    def cmd_rpush(self, key: str, *values: str) -> int:
        items = self._get_or_create(key, list)
        items.extend(values)
        return len(items)

    def cmd_rpop(self, key: str) -> str | None:
        items = self._get(key, list)
        if not items:
            return None
        value = items.pop()
        self._drop_if_empty(key)
        return value

    def cmd_llen(self, key: str) -> int:
        return len(self._get(key, list) or [])

    def cmd_lrange(self, key: str, start: str, stop: str) -> list[str]:
        items = self._get(key, list) or []
        lo, hi = _slice(len(items), int(start), int(stop))
        return items[lo:hi + 1] if lo <= hi else []

    def cmd_ltrim(self, key: str, start: str, stop: str) -> str:
        items = self._get(key, list)
        if items is not None:
            lo, hi = _slice(len(items), int(start), int(stop))
            items[:] = items[lo:hi + 1] if lo <= hi else []
            self._drop_if_empty(key)
        return "OK"

    def cmd_lrem(self, key: str, count: str, value: str) -> int:
        items = self._get(key, list)
        if not items:
            return 0
        limit = int(count)
        indexes = [i for i, item in enumerate(items) if item == value]
        if limit < 0:
            indexes = indexes[::-1][: -limit]
        elif limit > 0:
            indexes = indexes[:limit]
        for i in sorted(indexes, reverse=True):
            del items[i]
        self._drop_if_empty(key)
        return len(indexes)

    # Sorted sets

    def _ordered(self, zset: _ZSet) -> list[tuple[str, float]]:
        return sorted(zset.items(), key=lambda pair: (pair[1], pair[0]))

    @staticmethod
    def _with_scores(pairs: list[tuple[str, float]], withscores: bool) -> list[str]:
        if not withscores:
            return [member for member, _ in pairs]
        flat: list[str] = []
        for member, score in pairs:
            flat += [member, _num(score)]
        return flat

    def cmd_zadd(self, key: str, *args: str) -> int:
        zset = self._get_or_create(key, _ZSet)
        added = 0
        for i in range(0, len(args), 2):
            score, member = float(args[i]), args[i + 1]
            if member not in zset:
                added += 1
            zset[member] = score
        return added

    def cmd_zrangebyscore(self, key: str, low: str, high: str, *options: str) -> list[str]:
        zset = self._get(key, _ZSet) or _ZSet()
        opts = [o.upper() for o in options]
        (lo, lo_ex), (hi, hi_ex) = _parse_bound(low), _parse_bound(high)

        pairs = [
            (member, score)
            for member, score in self._ordered(zset)
            if (score > lo if lo_ex else score >= lo) and (score < hi if hi_ex else score <= hi)
        ]
        if "LIMIT" in opts:
            i = opts.index("LIMIT")
            offset, count = int(options[i + 1]), int(options[i + 2])
            pairs = pairs[offset:] if count < 0 else pairs[offset:offset + count]
        return self._with_scores(pairs, "WITHSCORES" in opts)

    def cmd_zrange(self, key: str, start: str, stop: str, *options: str) -> list[str]:
        pairs = self._ordered(self._get(key, _ZSet) or _ZSet())
        lo, hi = _slice(len(pairs), int(start), int(stop))
        pairs = pairs[lo:hi + 1] if lo <= hi else []
        return self._with_scores(pairs, "WITHSCORES" in [o.upper() for o in options])

    def cmd_zscore(self, key: str, member: str) -> str | None:
        zset = self._get(key, _ZSet) or _ZSet()
        return _num(zset[member]) if member in zset else None

    def cmd_zrem(self, key: str, *members: str) -> int:
        zset = self._get(key, _ZSet)
        if not zset:
            return 0
        removed = sum(1 for member in members if zset.pop(member, None) is not None)
        self._drop_if_empty(key)
        return removed

    def cmd_zcard(self, key: str) -> int:
        return len(self._get(key, _ZSet) or {})

    def cmd_zremrangebyrank(self, key: str, start: str, stop: str) -> int:
        zset = self._get(key, _ZSet)
        if not zset:
            return 0
        pairs = self._ordered(zset)
        lo, hi = _slice(len(pairs), int(start), int(stop))
        doomed = pairs[lo:hi + 1] if lo <= hi else []
        for member, _ in doomed:
            del zset[member]
        self._drop_if_empty(key)
        return len(doomed)

    # Hashes

    def cmd_hset(self, key: str, *args: str) -> int:
        fields = self._get_or_create(key, dict)
        added = 0
        for i in range(0, len(args), 2):
            if args[i] not in fields:
                added += 1
            fields[args[i]] = args[i + 1]
        return added

    def cmd_hget(self, key: str, field: str) -> str | None:
        return (self._get(key, dict) or {}).get(field)

    def cmd_hgetall(self, key: str) -> list[str]:
        flat: list[str] = []
        for field, value in (self._get(key, dict) or {}).items():
            flat += [field, value]
        return flat

    def cmd_hincrby(self, key: str, field: str, amount: str) -> int:
        fields = self._get_or_create(key, dict)
        value = int(fields.get(field, 0)) + int(amount)
        fields[field] = str(value)
        return value

    def cmd_hdel(self, key: str, *names: str) -> int:
        fields = self._get(key, dict)
        if not fields:
            return 0
        removed = sum(1 for name in names if fields.pop(name, None) is not None)
        self._drop_if_empty(key)
        return removed

    # Sets

    def cmd_sadd(self, key: str, *members: str) -> int:
        members_set = self._get_or_create(key, set)
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    def cmd_srem(self, key: str, *members: str) -> int:
        members_set = self._get(key, set)
        if not members_set:
            return 0
        removed = sum(1 for member in members if member in members_set)
        members_set.difference_update(members)
        self._drop_if_empty(key)
        return removed

    def cmd_smembers(self, key: str) -> list[str]:
        return sorted(self._get(key, set) or set())

    def cmd_scard(self, key: str) -> int:
        return len(self._get(key, set) or set())
