"""
Unit tests for the store client and serialization helpers.
"""

import typing

import httpx
import pytest

from kvqueue.store.client import StoreClient, StoreCommandError, StoreUnavailableError
from kvqueue.store.serialization import DeserializationError, Ok, decode_json, deserialize, serialize
from kvqueue.types.job import Job


class TestStoreClient:
    """Tests for StoreClient against the in-memory store."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token_and_json_command(self):
        """Test commands are POSTed as JSON arrays with a bearer token."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"result": "PONG"})

        client = StoreClient(
            base_url="http://fake-upstash",
            token="secret",
            transport=httpx.MockTransport(handler),
        )

        assert await client.ping() is True
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert seen[0].read() == b'["PING"]'

    @pytest.mark.asyncio
    async def test_set_modifiers(self, store: StoreClient, clock):
        """Test NX, XX and EX behave like their Redis counterparts."""
        assert await store.set("k", "v1", nx=True) is True
        assert await store.set("k", "v2", nx=True) is False
        assert await store.get("k") == "v1"

        assert await store.set("missing", "v", xx=True) is False
        assert await store.exists("missing") == 0

        assert await store.set("ttl", "v", ex=10) is True
        assert await store.ttl("ttl") == 10
        clock.advance(11)
        assert await store.get("ttl") is None

    @pytest.mark.asyncio
    async def test_keepttl_preserves_expiry(self, store: StoreClient, clock):
        """Test KEEPTTL rewrites a value without extending its life."""
        await store.set("entry", "v1", ex=60)
        clock.advance(30)

        await store.set("entry", "v2", xx=True, keepttl=True)

        assert await store.get("entry") == "v2"
        assert await store.ttl("entry") == 30

    @pytest.mark.asyncio
    async def test_sorted_set_range_with_scores(self, store: StoreClient):
        """Test ZRANGEBYSCORE normalises scores and honours LIMIT."""
        await store.zadd("z", {"a": 1, "b": 2, "c": 3})

        assert await store.zrangebyscore("z", "-inf", 2) == ["a", "b"]
        assert await store.zrangebyscore("z", "-inf", "+inf", count=1) == ["a"]
        assert await store.zrangebyscore("z", 2, 3, withscores=True) == [("b", 2.0), ("c", 3.0)]

    @pytest.mark.asyncio
    async def test_hash_round_trip(self, store: StoreClient):
        """Test HSET encodes non-string values and HGETALL returns a dict."""
        await store.hset("h", {"count": 3, "tags": ["a", "b"], "name": "x"})

        assert await store.hgetall("h") == {"count": "3", "tags": '["a", "b"]', "name": "x"}
        assert await store.hincrby("h", "count", 2) == 5

    @pytest.mark.asyncio
    async def test_scan_iter(self, store: StoreClient):
        """Test SCAN iteration over matching keys."""
        await store.set("cache:a", "1")
        await store.set("cache:b", "2")
        await store.set("other", "3")

        keys = [key async for key in store.scan_iter(match="cache:*")]

        assert sorted(keys) == ["cache:a", "cache:b"]

    @pytest.mark.asyncio
    async def test_pipeline_returns_results_in_order(self, store: StoreClient):
        """Test pipelined commands return one result each."""
        results = await store.pipeline([["INCR", "n"], ["INCR", "n"], ["GET", "n"]])

        assert results == [1, 2, "2"]

    @pytest.mark.asyncio
    async def test_command_error(self, store: StoreClient):
        """Test an error reply raises StoreCommandError."""
        await store.set("string", "v")

        with pytest.raises(StoreCommandError):
            await store.lpush("string", "x")

    @pytest.mark.asyncio
    async def test_unavailable_store(self, store: StoreClient, upstash):
        """Test a 5xx reply raises StoreUnavailableError."""
        upstash.fail = True

        with pytest.raises(StoreUnavailableError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Test transport failures are wrapped."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = StoreClient(base_url="http://fake-upstash", transport=httpx.MockTransport(handler))

        with pytest.raises(StoreUnavailableError):
            await client.get("k")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [404, 429])
    async def test_non_success_status_without_error_is_unavailable(self, status_code: int):
        """Test a non-2xx reply is never read as a successful command."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"message": "nope"})

        client = StoreClient(base_url="http://fake-upstash", transport=httpx.MockTransport(handler))

        with pytest.raises(StoreUnavailableError):
            await client.get("k")

    @pytest.mark.asyncio
    async def test_bad_request_with_error_body_is_command_error(self):
        """Test a 400 carrying an error body is a rejected command."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "ERR wrong number of arguments"})

        client = StoreClient(base_url="http://fake-upstash", transport=httpx.MockTransport(handler))

        with pytest.raises(StoreCommandError, match="wrong number of arguments"):
            await client.get("k")

    def test_set_returning_methods_resolve_builtin_set(self):
        """Test set-typed annotations resolve despite the ``set`` command method."""
        hints = typing.get_type_hints(StoreClient.smembers)

        assert hints["return"] == set[str]


class TestSerialization:
    """Tests for the tagged decode helpers."""

    def test_deserialize_model(self):
        """Test a serialized model decodes back."""
        job = Job(id="1-abc", queue_name="email", payload={"a": 1}, created_at=1)

        decoded = deserialize(serialize(job), Job)

        assert isinstance(decoded, Ok)
        assert decoded.value == job

    def test_deserialize_malformed(self):
        """Test malformed input becomes an error value, not an exception."""
        decoded = deserialize("{not json", Job)

        assert isinstance(decoded, DeserializationError)
        assert decoded.raw == "{not json"

    def test_deserialize_missing(self):
        """Test a missing value is reported as an error."""
        assert isinstance(deserialize(None, Job), DeserializationError)

    def test_decode_json(self):
        """Test plain JSON decoding."""
        assert decode_json('{"a": [1, 2]}') == Ok({"a": [1, 2]})
        assert isinstance(decode_json("nope"), DeserializationError)
