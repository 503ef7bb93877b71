"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

# Settings are read once and cached; configure them before importing kvqueue
os.environ["TRACING_ENABLED"] = "false"
os.environ["UPSTASH_REDIS_REST_URL"] = "http://fake-upstash"
os.environ["UPSTASH_REDIS_REST_TOKEN"] = "test-token"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["API_SECRET_KEY"] = "test-secret-key"
os.environ["DLQ_JITTER"] = "false"

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from kvqueue.api.auth import create_access_token
from kvqueue.api.dependencies import get_clock, get_store
from kvqueue.api.main import create_app
from kvqueue.services import Services, build_services
from kvqueue.store.client import StoreClient
from tests.fakes import FakeClock, InMemoryUpstash


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock shared by the fake store and the components."""
    return FakeClock()


@pytest.fixture
def upstash(clock: FakeClock) -> InMemoryUpstash:
    """In-memory backing store."""
    return InMemoryUpstash(clock)


@pytest_asyncio.fixture
async def store(upstash: InMemoryUpstash) -> AsyncGenerator[StoreClient]:
    """Store client wired to the in-memory backing store."""
    async with StoreClient(
        base_url="http://fake-upstash",
        token="test-token",
        transport=upstash.transport(),
    ) as client:
        yield client


@pytest.fixture
def services(store: StoreClient, clock: FakeClock) -> Services:
    """All components around the test store, with jitter centred."""
    return build_services(store, clock=clock, rng=lambda: 0.5)


@pytest_asyncio.fixture
async def app(upstash: InMemoryUpstash, clock: FakeClock) -> AsyncGenerator[FastAPI]:
    """FastAPI app whose requests use the in-memory store and test clock."""

    async def override_store() -> AsyncGenerator[StoreClient]:
        async with StoreClient(
            base_url="http://fake-upstash",
            token="test-token",
            transport=upstash.transport(),
        ) as client:
            yield client

    app = create_app()
    app.dependency_overrides[get_store] = override_store
    app.dependency_overrides[get_clock] = lambda: clock
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def cron_headers() -> dict[str, str]:
    """Headers carrying the shared operator secret."""
    return {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def test_user_id() -> str:
    """Generate a test user ID."""
    return f"test-user-{uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(test_user_id: str) -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(user_id=test_user_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"to": "user@example.com", "template": "welcome"}
