"""
Integration tests for the API endpoints.
"""

from typing import Any

import pytest
import pytest_asyncio
from httpx import AsyncClient

from kvqueue.api.auth import create_access_token
from kvqueue.constants import FailureStatus, JobStatus, UserTier


class TestJobAPI:
    """Integration tests for job submission and status."""

    @pytest_asyncio.fixture
    async def created_job(self, client: AsyncClient, sample_payload: dict[str, Any]) -> dict:
        """Submit an echo job for testing."""
        response = await client.post("/v1/queues/echo/jobs", json={"payload": sample_payload})
        return response.json()

    @pytest.mark.asyncio
    async def test_enqueue_job(self, client: AsyncClient, sample_payload: dict[str, Any]):
        """Test a job is accepted and rate limit headers are set."""
        response = await client.post("/v1/queues/echo/jobs", json={"payload": sample_payload})

        assert response.status_code == 202
        data = response.json()
        assert data["queue_name"] == "echo"
        assert data["delayed"] is False
        assert data["job_id"]
        assert response.headers["X-RateLimit-Limit"] == "50"
        assert response.headers["X-RateLimit-Remaining"] == "49"

    @pytest.mark.asyncio
    async def test_enqueue_delayed_job(self, client: AsyncClient):
        response = await client.post(
            "/v1/queues/echo/jobs",
            json={"payload": {"n": 1}, "delay_ms": 5000},
        )

        assert response.status_code == 202
        assert response.json()["delayed"] is True

        status_response = await client.get(f"/v1/jobs/{response.json()['job_id']}")
        assert status_response.json()["status"] == JobStatus.DELAYED

    @pytest.mark.asyncio
    async def test_enqueue_validation(self, client: AsyncClient):
        """Test bad queue names and bodies are rejected."""
        bad_name = await client.post(f"/v1/queues/{'x' * 65}/jobs", json={"payload": {}})
        assert bad_name.status_code == 422

        no_payload = await client.post("/v1/queues/echo/jobs", json={})
        assert no_payload.status_code == 422

        negative_delay = await client.post(
            "/v1/queues/echo/jobs", json={"payload": {}, "delay_ms": -1}
        )
        assert negative_delay.status_code == 422

    @pytest.mark.asyncio
    async def test_enqueue_store_down(self, client: AsyncClient, upstash):
        """Test an unreachable store is a 503, with the limiter failing open."""
        upstash.fail = True

        response = await client.post("/v1/queues/echo/jobs", json={"payload": {}})

        assert response.status_code == 503
        assert response.json()["detail"] == "Job store unavailable"

    @pytest.mark.asyncio
    async def test_get_job(self, client: AsyncClient, created_job: dict):
        response = await client.get(f"/v1/jobs/{created_job['job_id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == JobStatus.QUEUED
        assert data["queue_name"] == "echo"
        assert data["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_get_job_not_found(self, client: AsyncClient):
        response = await client.get("/v1/jobs/does-not-exist")

        assert response.status_code == 404


class TestRateLimitAPI:
    """Rate limiting on job submission."""

    @pytest.mark.asyncio
    async def test_anonymous_limit(self, client: AsyncClient):
        """Test the 51st anonymous request in a window is refused."""
        for _ in range(50):
            response = await client.post("/v1/queues/echo/jobs", json={"payload": {}})
            assert response.status_code == 202

        response = await client.post("/v1/queues/echo/jobs", json={"payload": {}})

        assert response.status_code == 429
        assert response.json()["detail"] == "Rate limit exceeded"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) >= 1

    @pytest.mark.asyncio
    async def test_callers_are_limited_separately(self, client: AsyncClient):
        for _ in range(50):
            await client.post(
                "/v1/queues/echo/jobs",
                json={"payload": {}},
                headers={"X-Forwarded-For": "10.0.0.1"},
            )

        other = await client.post(
            "/v1/queues/echo/jobs",
            json={"payload": {}},
            headers={"X-Forwarded-For": "10.0.0.2"},
        )
        assert other.status_code == 202

    @pytest.mark.asyncio
    async def test_plan_scales_limit(self, client: AsyncClient, test_user_id: str):
        """Test a pro token gets the pro multiplier."""
        token = create_access_token(user_id=test_user_id, plan=UserTier.PRO)

        response = await client.post(
            "/v1/queues/echo/jobs",
            json={"payload": {}},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 202
        assert response.headers["X-RateLimit-Limit"] == "200"

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, client: AsyncClient):
        response = await client.post(
            "/v1/queues/echo/jobs",
            json={"payload": {}},
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401


class TestDrainAPI:
    """Drain triggers."""

    @pytest.mark.asyncio
    async def test_requires_cron_secret(self, client: AsyncClient):
        assert (await client.post("/queue/echo/drain")).status_code == 401
        assert (await client.post("/dlq/drain")).status_code == 401
        response = await client.post(
            "/queue/echo/drain", headers={"Authorization": "Bearer wrong"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_drain_echo_queue(
        self,
        client: AsyncClient,
        cron_headers: dict[str, str],
        auth_headers: dict[str, str],
        sample_payload: dict[str, Any],
    ):
        """Test a drain processes queued jobs and records their results."""
        created = await client.post(
            "/v1/queues/echo/jobs", json={"payload": sample_payload}, headers=auth_headers
        )
        job_id = created.json()["job_id"]

        response = await client.post("/queue/echo/drain", headers=cron_headers)

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "failed": 0, "errors": []}

        status_response = await client.get(f"/v1/jobs/{job_id}")
        data = status_response.json()
        assert data["status"] == JobStatus.COMPLETED
        assert data["result"] == {"echo": sample_payload}

    @pytest.mark.asyncio
    async def test_drain_max_jobs(self, client: AsyncClient, cron_headers: dict[str, str]):
        for _ in range(3):
            await client.post("/v1/queues/echo/jobs", json={"payload": {}})

        response = await client.post(
            "/queue/echo/drain", json={"maxJobs": 2}, headers=cron_headers
        )

        assert response.json()["processed"] == 2

    @pytest.mark.asyncio
    async def test_drain_unknown_queue(self, client: AsyncClient, cron_headers: dict[str, str]):
        response = await client.post("/queue/nothing-here/drain", headers=cron_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_dlq_drain(self, client: AsyncClient, cron_headers: dict[str, str]):
        response = await client.post("/dlq/drain", headers=cron_headers)

        assert response.status_code == 200
        assert response.json()["processed"] == 0


class TestOperatorAPI:
    """Admin and maintenance routes."""

    @pytest_asyncio.fixture
    async def failed_job_id(self, client: AsyncClient, cron_headers: dict[str, str]) -> str:
        """A webhook job without a url, drained once so it lands in the DLQ."""
        created = await client.post("/v1/queues/webhook/jobs", json={"payload": {}})
        await client.post("/queue/webhook/drain", headers=cron_headers)
        return created.json()["job_id"]

    @pytest.mark.asyncio
    async def test_admin_requires_cron_secret(self, client: AsyncClient):
        assert (await client.get("/admin/metrics")).status_code == 401
        assert (await client.post("/maintenance/requeue-stalled")).status_code == 401

    @pytest.mark.asyncio
    async def test_failed_job_inspection_and_retry(
        self,
        client: AsyncClient,
        cron_headers: dict[str, str],
        failed_job_id: str,
    ):
        """Test a failed job can be inspected and retried by an operator."""
        response = await client.get(f"/admin/dlq/jobs/{failed_job_id}", headers=cron_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == FailureStatus.SCHEDULED_RETRY
        assert data["error"] == "Missing 'url' in payload"
        assert data["original_queue"] == "webhook"

        stats = await client.get("/admin/dlq/stats", headers=cron_headers)
        assert stats.json()["scheduled_retries"] == 1
        assert stats.json()["by_queue"] == {"webhook": 1}

        retry = await client.post(f"/admin/dlq/jobs/{failed_job_id}/retry", headers=cron_headers)
        assert retry.json() == {"job_id": failed_job_id, "requeued": True}

        queue = await client.get("/admin/queues/webhook/stats", headers=cron_headers)
        assert queue.json()["pending"] == 1

        metrics = await client.get("/admin/dlq/metrics?days=1", headers=cron_headers)
        assert metrics.json()["summary"] == {"failed": 1, "retried": 1}

    @pytest.mark.asyncio
    async def test_unknown_failed_job(self, client: AsyncClient, cron_headers: dict[str, str]):
        assert (await client.get("/admin/dlq/jobs/nope", headers=cron_headers)).status_code == 404
        response = await client.post("/admin/dlq/jobs/nope/retry", headers=cron_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_permanent_failures_empty(self, client: AsyncClient, cron_headers: dict[str, str]):
        response = await client.get("/admin/dlq/permanent", headers=cron_headers)

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_alerts(
        self,
        client: AsyncClient,
        cron_headers: dict[str, str],
        failed_job_id: str,
    ):
        """Test a failing drain raises alerts that can be acknowledged."""
        response = await client.get("/admin/alerts", headers=cron_headers)
        alerts = response.json()
        assert "error_rate" in {a["type"] for a in alerts}

        alert_id = alerts[0]["id"]
        ack = await client.post(f"/admin/alerts/{alert_id}/acknowledge", headers=cron_headers)
        assert ack.json() == {"alert_id": alert_id, "acknowledged": True}

        missing = await client.post("/admin/alerts/nope/acknowledge", headers=cron_headers)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_metrics_routes(
        self,
        client: AsyncClient,
        cron_headers: dict[str, str],
        failed_job_id: str,
    ):
        metrics = await client.get("/admin/metrics", headers=cron_headers)
        assert metrics.json()["total_failed"] == 1
        assert metrics.json()["overall_error_rate"] == 1.0

        queue = await client.get("/admin/queues/webhook", headers=cron_headers)
        assert queue.json()["failed"] == 1
        assert queue.json()["dlq_backlog"] == 1

        invalid = await client.get(f"/admin/queues/{'x' * 65}", headers=cron_headers)
        assert invalid.status_code == 404

        performance = await client.get("/admin/performance", headers=cron_headers)
        assert performance.json()["throughput"]["last_1h"] == 1

        cache = await client.get("/admin/cache/stats", headers=cron_headers)
        assert cache.json()["hit_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_maintenance(
        self,
        client: AsyncClient,
        cron_headers: dict[str, str],
        failed_job_id: str,
    ):
        """Test maintenance triggers report what they touched."""
        stalled = await client.post("/maintenance/requeue-stalled", headers=cron_headers)
        assert stalled.json() == {"action": "requeue-stalled", "affected": 0, "details": {}}

        purge = await client.post("/maintenance/dlq-purge?days=0", headers=cron_headers)
        assert purge.json()["affected"] == 1

        too_long = await client.post("/maintenance/dlq-purge?days=400", headers=cron_headers)
        assert too_long.status_code == 422

        reconcile = await client.post("/maintenance/cache-reconcile", headers=cron_headers)
        assert reconcile.json()["action"] == "cache-reconcile"
        assert reconcile.json()["affected"] == 0


class TestHealthAPI:
    """Health, liveness and Prometheus routes."""

    @pytest.mark.asyncio
    async def test_health_healthy(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_unhealthy(self, client: AsyncClient, upstash):
        upstash.fail = True

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient, upstash):
        upstash.fail = True

        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_prometheus(self, client: AsyncClient):
        await client.post("/v1/queues/echo/jobs", json={"payload": {}})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "kvqueue_jobs_enqueued_total" in response.text
        assert "kvqueue_api_requests_total" in response.text
