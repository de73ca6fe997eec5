"""
Dispatcher facade.

Wires one transport connection, publisher, periodic scheduler and worker
pool together and exposes the public surface: publish, publish_periodic,
run_batch, and start/stop of the worker side.
"""

import asyncio
import importlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel

from jobdispatch.config import Settings, get_settings
from jobdispatch.constants import QueueClass
from jobdispatch.observability.metrics import MetricsCollector, get_metrics
from jobdispatch.publisher import Publisher
from jobdispatch.retry import RetryPolicy
from jobdispatch.scheduler.main import PeriodicRegistration, PeriodicScheduler, ScheduleSpec
from jobdispatch.serialization import Serializer
from jobdispatch.transport import Transport, create_transport
from jobdispatch.types.envelope import JobEnvelope, utcnow
from jobdispatch.worker.factory import JobFactory
from jobdispatch.worker.handlers import JobRegistry
from jobdispatch.worker.main import WorkerPool

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Dispatcher:
    """
    Entry point for producers and workers.

    Producers only need publish/publish_periodic/run_batch. Worker
    instances additionally call start() to run the consumer loops and the
    periodic scheduler, and stop() on shutdown.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        settings: Settings | None = None,
        factory: JobFactory | None = None,
        serializer: Serializer | None = None,
        registry: JobRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        concurrency: dict[QueueClass, int] | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self.transport = transport or create_transport(self.settings)
        self.publisher = Publisher(
            self.transport,
            serializer=serializer,
            settings=self.settings,
            registry=registry,
            metrics=self._metrics,
            clock=clock,
        )
        self.scheduler = PeriodicScheduler(
            self.publisher, settings=self.settings, metrics=self._metrics, clock=clock
        )
        self.worker_pool = WorkerPool(
            self.transport,
            publisher=self.publisher,
            factory=factory,
            serializer=serializer,
            retry_policy=retry_policy,
            settings=self.settings,
            concurrency=concurrency,
            metrics=self._metrics,
            clock=clock,
        )
        self._scheduler_task: asyncio.Task | None = None
        self._connected = False

    async def connect(self) -> None:
        if not self._connected:
            await self.transport.connect()
            self._connected = True

    async def publish(
        self,
        job_type: str,
        arguments: bytes | BaseModel | dict[str, Any] | None = None,
        *,
        delay: float | timedelta | None = None,
        timeout: float | None = None,
    ) -> JobEnvelope:
        """Publish a job. See Publisher.publish."""
        await self.connect()
        return await self.publisher.publish(job_type, arguments, delay=delay, timeout=timeout)

    def publish_periodic(
        self,
        periodic_id: str,
        job_type: str,
        arguments: bytes | BaseModel | dict[str, Any] | None,
        schedule: ScheduleSpec,
        timeout: float | None = None,
    ) -> PeriodicRegistration:
        """
        Register a periodic job with this instance's scheduler.

        Every instance registers the same periodic jobs at startup; the
        scheduler makes sure each occurrence runs once cluster-wide.

        Raises:
            DuplicatePeriodicId: If the id is already registered.
        """
        return self.scheduler.register(periodic_id, job_type, arguments, schedule, timeout=timeout)

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[Publisher]:
        """Buffer publishes made inside the block. See Publisher.batch."""
        await self.connect()
        async with self.publisher.batch() as publisher:
            yield publisher

    async def run_batch(self, body: Callable[[], Awaitable[T]]) -> T:
        await self.connect()
        return await self.publisher.run_batch(body)

    async def queue_depths(self) -> dict[str, int]:
        """Messages waiting per queue class, including held delayed messages."""
        await self.connect()
        depths = {}
        for queue_class in QueueClass:
            depth = await self.transport.queue_length(self.publisher.queue_for(queue_class))
            self._metrics.update_queue_depth(queue_class.value, depth)
            depths[queue_class.value] = depth
        return depths

    async def start(self, workers: bool = True, scheduler: bool = True) -> None:
        """Connect and start the worker pool and the periodic scheduler."""
        await self.connect()
        if workers:
            await self.worker_pool.start()
        if scheduler and self._scheduler_task is None:
            self._scheduler_task = asyncio.create_task(self.scheduler.start(), name="scheduler")
        logger.info("Dispatcher started", extra={"workers": workers, "scheduler": scheduler})

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop the scheduler and worker pool, then close the transport."""
        if self._scheduler_task is not None:
            await self.scheduler.stop()
            await self._scheduler_task
            self._scheduler_task = None
        if self.worker_pool.running:
            await self.worker_pool.stop(grace_seconds)
        await self.transport.close()
        self._connected = False
        logger.info("Dispatcher stopped")

    async def __aenter__(self) -> "Dispatcher":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()


def load_jobs_module(dispatcher: Dispatcher, module_path: str | None) -> None:
    """
    Import the application module that registers job handlers.

    If the module defines `configure(dispatcher)`, it is called so the
    module can register periodic jobs.
    """
    if not module_path:
        return
    module = importlib.import_module(module_path)
    configure = getattr(module, "configure", None)
    if callable(configure):
        configure(dispatcher)
    logger.info("Loaded jobs module", extra={"module": module_path})
