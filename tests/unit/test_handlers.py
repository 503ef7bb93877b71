"""
Unit tests for the processor registry and built-in processors.
"""

import json

import httpx
import pytest

from kvqueue.types.job import Job, JobResult
from kvqueue.worker import handlers
from kvqueue.worker.handlers import (
    get_processor,
    list_processors,
    process_echo,
    process_webhook,
    register_processor,
)


def make_job(queue_name: str, payload) -> Job:
    return Job(id="job-1", queue_name=queue_name, payload=payload, created_at=0)


@pytest.fixture
def webhook_requests(monkeypatch) -> list[httpx.Request]:
    """Route webhook POSTs to an in-process responder and record them."""
    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def respond(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/broken":
            return httpx.Response(500, text="upstream exploded")
        return httpx.Response(200, json={"ok": True})

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(respond), **kwargs)

    monkeypatch.setattr(handlers.httpx, "AsyncClient", client_factory)
    return seen


class TestRegistry:
    """Tests for processor registration."""

    def test_builtins_registered(self):
        assert "echo" in list_processors()
        assert "webhook" in list_processors()
        assert get_processor("echo") is process_echo

    def test_unknown_queue(self):
        assert get_processor("no-such-queue") is None

    def test_register(self, monkeypatch):
        """Test the decorator registers and returns the processor."""
        monkeypatch.setattr(handlers, "_processors", dict(handlers._processors))

        @register_processor("reports")
        async def build_report(job: Job) -> JobResult:
            return JobResult(success=True)

        assert get_processor("reports") is build_report
        assert list_processors() == sorted(list_processors())


class TestBuiltinProcessors:
    """Tests for echo and webhook."""

    @pytest.mark.asyncio
    async def test_echo(self):
        result = await process_echo(make_job("echo", {"message": "hi"}))

        assert result.success is True
        assert result.output == {"echo": {"message": "hi"}}

    @pytest.mark.asyncio
    async def test_webhook_delivers(self, webhook_requests):
        """Test the body and job id header reach the target."""
        job = make_job(
            "webhook",
            {
                "url": "http://hooks.test/ok",
                "body": {"event": "signup"},
                "headers": {"X-Source": "kvqueue"},
            },
        )

        result = await process_webhook(job)

        assert result.success is True
        assert result.output["status_code"] == 200
        request = webhook_requests[0]
        assert json.loads(request.content) == {"event": "signup"}
        assert request.headers["X-Job-Id"] == "job-1"
        assert request.headers["X-Source"] == "kvqueue"

    @pytest.mark.asyncio
    async def test_webhook_error_status(self, webhook_requests):
        result = await process_webhook(make_job("webhook", {"url": "http://hooks.test/broken"}))

        assert result.success is False
        assert result.error == "HTTP 500"
        assert result.output["body"] == "upstream exploded"

    @pytest.mark.asyncio
    async def test_webhook_missing_url(self, webhook_requests):
        result = await process_webhook(make_job("webhook", {"body": {}}))

        assert result.success is False
        assert result.error == "Missing 'url' in payload"
        assert webhook_requests == []
