"""
Integration tests for the admin API endpoints.
"""

import pytest
from httpx import AsyncClient

from jobdispatch.client import Dispatcher
from jobdispatch.constants import QueueClass, TerminalReason


class TestHealthAPI:
    """Tests for health and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_health_reports_queue_depths(self, client: AsyncClient, dispatcher: Dispatcher):
        await dispatcher.publish("record")

        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["transport"] == "healthy"
        assert data["queue_depths"]["regular"] == 1
        assert set(data["queue_depths"]) == {queue_class.value for queue_class in QueueClass}

    @pytest.mark.asyncio
    async def test_health_degraded_when_broker_down(self, client: AsyncClient, broker):
        broker.available = False

        response = await client.get("/health")

        broker.available = True
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["queue_depths"] == {}

    @pytest.mark.asyncio
    async def test_ready_and_live(self, client: AsyncClient):
        assert (await client.get("/ready")).json() == {"ready": True}
        assert (await client.get("/live")).json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]


class TestJobsAPI:
    """Tests for publishing over HTTP."""

    @pytest.mark.asyncio
    async def test_publish_job(self, client: AsyncClient, dispatcher: Dispatcher):
        response = await client.post("/v1/jobs", json={"job_type": "record", "arguments": {"value": 3}})

        assert response.status_code == 202
        data = response.json()
        assert data["job_type"] == "record"
        assert data["not_before"] is None
        assert (await dispatcher.queue_depths())["regular"] == 1

    @pytest.mark.asyncio
    async def test_publish_delayed_job(self, client: AsyncClient, dispatcher: Dispatcher):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "record", "delay_seconds": 30, "timeout": 60},
        )

        assert response.status_code == 202
        assert response.json()["not_before"] is not None
        assert (await dispatcher.queue_depths())["delayed"] == 1

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"job_type": "record", "arguments": {"value": "x"}})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_job_type(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"arguments": {}})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_broker_down(self, client: AsyncClient, broker):
        broker.available = False

        response = await client.post("/v1/jobs", json={"job_type": "record"})

        broker.available = True
        assert response.status_code == 503


class TestFailedAPI:
    """Tests for failed queue management."""

    @pytest.mark.asyncio
    async def test_list_failed(self, client: AsyncClient, dispatcher: Dispatcher):
        envelope = dispatcher.publisher.build_envelope("record", {"value": 1})
        await dispatcher.publisher.publish_failed(envelope, TerminalReason.RETRIES_EXHAUSTED, "boom")
        await dispatcher.publisher.publish_failed(b"garbage", TerminalReason.SERIALIZATION_ERROR, "bad")

        response = await client.get("/v1/failed", params={"limit": 10})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        first, second = data["jobs"]
        assert first["job_id"] == str(envelope.id)
        assert first["reason"] == "retries-exhausted"
        assert first["error"] == "boom"
        assert second["job_id"] is None
        assert second["reason"] == "serialization-error"

    @pytest.mark.asyncio
    async def test_list_failed_limit_validated(self, client: AsyncClient):
        response = await client.get("/v1/failed", params={"limit": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_republish(self, client: AsyncClient, dispatcher: Dispatcher):
        envelope = dispatcher.publisher.build_envelope("record").successor(15, "boom")
        await dispatcher.publisher.publish_failed(envelope, TerminalReason.RETRIES_EXHAUSTED, "boom")

        response = await client.post("/v1/failed/republish", json={"limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["republished"] == [str(envelope.id)]
        depths = await dispatcher.queue_depths()
        assert depths["failed"] == 0
        assert depths["regular"] == 1
