"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry
from pydantic import BaseModel

from jobdispatch.api.main import create_app
from jobdispatch.client import Dispatcher
from jobdispatch.config import Settings
from jobdispatch.observability.metrics import MetricsCollector
from jobdispatch.publisher import Publisher
from jobdispatch.transport.memory import InMemoryBroker, InMemoryTransport
from jobdispatch.types.job import JobContext, JobResult
from jobdispatch.worker.factory import RegistryJobFactory
from jobdispatch.worker.handlers import JobRegistry, SleepArgs
from jobdispatch.worker.main import WorkerPool

# Midnight, so interval schedules line up with round timestamps
START_TIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordArgs(BaseModel):
    value: int = 0


class JobRecorder:
    """Collects the contexts of executed test jobs."""

    def __init__(self) -> None:
        self.calls: list[JobContext] = []

    @property
    def job_types(self) -> list[str]:
        return [context.job_type for context in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at midnight UTC."""
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        transport_backend="memory",
        redis_prefix="test",
        log_level="DEBUG",
        log_format="console",
        worker_id="test-worker",
        worker_batch_size=10,
        worker_concurrency_regular=2,
        worker_concurrency_long_running=1,
        worker_concurrency_retry=1,
        worker_concurrency_periodic=1,
        worker_shutdown_grace_seconds=1.0,
        transport_connect_retries=0,
        transport_retry_backoff_seconds=0.01,
        transport_poll_interval_seconds=0.02,
        scheduler_tick_seconds=0.05,
        publish_batch_size=100,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry so tests never collide."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def recorder() -> JobRecorder:
    return JobRecorder()


@pytest.fixture
def registry(recorder: JobRecorder) -> JobRegistry:
    """Registry with deterministic test job types."""
    registry = JobRegistry()

    async def record(context: JobContext) -> JobResult:
        recorder.calls.append(context)
        return JobResult(success=True, output={"value": context.arguments.value})

    async def boom(context: JobContext) -> None:
        recorder.calls.append(context)
        raise RuntimeError("boom")

    async def slow(context: JobContext) -> None:
        recorder.calls.append(context)
        await asyncio.sleep(context.arguments.duration_seconds)

    def blocking(context: JobContext) -> dict[str, Any]:
        recorder.calls.append(context)
        return {"thread": True}

    registry.register("record", record, schema=RecordArgs)
    registry.register("boom", boom)
    registry.register("slow", slow, schema=SleepArgs)
    registry.register("blocking", blocking)
    return registry


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryBroker:
    """Shared in-memory broker driven by the fake clock."""
    return InMemoryBroker(clock=clock)


@pytest_asyncio.fixture
async def transport(broker: InMemoryBroker) -> AsyncGenerator[InMemoryTransport]:
    """One connection to the shared broker."""
    transport = InMemoryTransport(broker, poll_interval=0.01)
    await transport.connect()
    yield transport
    await transport.close()


@pytest.fixture
def publisher(
    transport: InMemoryTransport,
    test_settings: Settings,
    registry: JobRegistry,
    metrics: MetricsCollector,
    clock: FakeClock,
) -> Publisher:
    return Publisher(
        transport,
        settings=test_settings,
        registry=registry,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def worker_pool(
    transport: InMemoryTransport,
    publisher: Publisher,
    registry: JobRegistry,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> WorkerPool:
    return WorkerPool(
        transport,
        publisher=publisher,
        factory=RegistryJobFactory(registry),
        settings=test_settings,
        metrics=metrics,
    )


@pytest.fixture
def make_dispatcher(
    broker: InMemoryBroker,
    test_settings: Settings,
    registry: JobRegistry,
    metrics: MetricsCollector,
    clock: FakeClock,
):
    """Build dispatchers that behave like separate instances on one broker."""

    def factory(**overrides: Any) -> Dispatcher:
        options = {
            "transport": InMemoryTransport(broker, poll_interval=0.01),
            "settings": test_settings,
            "registry": registry,
            "factory": RegistryJobFactory(registry),
            "metrics": metrics,
            "clock": clock,
        }
        options.update(overrides)
        return Dispatcher(**options)

    return factory


@pytest_asyncio.fixture
async def dispatcher(make_dispatcher) -> AsyncGenerator[Dispatcher]:
    dispatcher = make_dispatcher()
    await dispatcher.connect()
    yield dispatcher
    await dispatcher.stop(grace_seconds=0)


@pytest_asyncio.fixture
async def app(dispatcher: Dispatcher) -> FastAPI:
    """Create a FastAPI app serving the test dispatcher."""
    return create_app(dispatcher=dispatcher)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(scope="session")
def redis_url() -> str | None:
    """Redis URL for transport tests, if one is configured."""
    return os.environ.get("REDIS_URL")
