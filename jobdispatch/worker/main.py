"""
Worker pool for executing jobs.

The pool runs a configurable number of consumer loops per queue class.
Each loop takes up to `batch_size` messages at a time, executes them in one
ExecutionScope, and settles each message on its own: success acks it,
failure hands the envelope to the retry policy and removes the original.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from jobdispatch.config import Settings, get_settings
from jobdispatch.constants import (
    EXECUTABLE_QUEUE_CLASSES,
    SPAN_EXECUTE_JOB,
    QueueClass,
    TerminalReason,
)
from jobdispatch.errors import (
    ExecutionFailure,
    RetriesExhausted,
    SerializationError,
    TimeoutFailure,
    TransportUnavailable,
)
from jobdispatch.observability.logging import job_log_context, setup_logging
from jobdispatch.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobdispatch.observability.tracing import job_span, setup_tracing
from jobdispatch.publisher import Publisher
from jobdispatch.retry import Retry, RetryPolicy
from jobdispatch.serialization import Serializer
from jobdispatch.transport.base import Delivery, Transport
from jobdispatch.types.envelope import JobEnvelope
from jobdispatch.types.job import JobContext
from jobdispatch.worker.factory import ExecutionScope, JobFactory, RegistryJobFactory

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Consumer loops draining the executable queue classes.

    Features:
    - Per queue class concurrency (long-running can be kept small)
    - Batched consumption sharing one execution scope per batch
    - Timeout enforcement by cancelling the job coroutine
    - Retry hand-off and failed-queue parking
    - Graceful shutdown with a grace period for in-flight jobs
    """

    def __init__(
        self,
        transport: Transport,
        publisher: Publisher | None = None,
        factory: JobFactory | None = None,
        serializer: Serializer | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
        concurrency: dict[QueueClass, int] | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the worker pool.

        Args:
            transport: Broker connection to consume from.
            publisher: Publisher used for retries and failed messages.
            factory: Produces executable jobs. Defaults to the handler registry.
            serializer: Envelope serializer. Defaults to the publisher's.
            retry_policy: Retry policy. Defaults to the configured one.
            settings: Settings override.
            concurrency: Consumer loops per queue class; missing classes use
                the configured defaults. The failed queue is never consumed.
            batch_size: Maximum messages taken per consume call.
            poll_interval: Seconds a consume call waits for messages.
        """
        settings = settings or get_settings()
        concurrency = concurrency or {}

        self.transport = transport
        self.publisher = publisher or Publisher(transport, serializer=serializer, settings=settings)
        self.factory = factory or RegistryJobFactory()
        self.serializer = serializer or self.publisher.serializer
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.max_attempts,
            offset_seconds=settings.retry_offset_seconds,
            exponent=settings.retry_exponent,
        )
        self.worker_id = settings.worker_id
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.transport_poll_interval_seconds
        self.shutdown_grace = settings.worker_shutdown_grace_seconds
        self.clock = clock or self.publisher.clock
        self.concurrency = {
            queue_class: concurrency.get(queue_class, settings.concurrency_for(queue_class))
            for queue_class in EXECUTABLE_QUEUE_CLASSES
        }

        self._running = False
        self._stopping = False
        self._tasks: list[asyncio.Task] = []
        self._metrics = metrics or get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Declare queues and start the consumer loops."""
        if self._running:
            return
        self._running = True
        self._stopping = False

        for queue_class in QueueClass:
            await self.transport.declare_queue(self.publisher.queue_for(queue_class))

        for queue_class, count in self.concurrency.items():
            for index in range(count):
                self._tasks.append(
                    asyncio.create_task(
                        self._consume_loop(queue_class),
                        name=f"worker.{queue_class.value}.{index}",
                    )
                )

        logger.info(
            "Worker pool starting",
            extra={
                "worker_id": self.worker_id,
                "batch_size": self.batch_size,
                "concurrency": {qc.value: n for qc, n in self.concurrency.items()},
            },
        )

    async def join(self) -> None:
        """Wait until every consumer loop has exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self, grace_seconds: float | None = None) -> None:
        """
        Stop the consumer loops.

        Loops stop taking messages immediately; in-flight jobs get
        `grace_seconds` to finish before their tasks are cancelled. Messages
        of cancelled jobs stay unacknowledged and return to their queues
        when the transport connection closes.
        """
        logger.info("Worker pool stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stopping = True
        grace = self.shutdown_grace if grace_seconds is None else grace_seconds

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace)
            if pending:
                logger.warning(f"Cancelling {len(pending)} consumer loops after grace period")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})

    async def _consume_loop(self, queue_class: QueueClass) -> None:
        queue = self.publisher.queue_for(queue_class)

        while self._running:
            try:
                deliveries = await self.transport.consume(
                    queue, max_messages=self.batch_size, timeout=self.poll_interval
                )
                if deliveries:
                    await self.process_batch(queue_class, deliveries)

            except TransportUnavailable as e:
                logger.warning(
                    "Transport unavailable in consumer loop",
                    extra={"queue_class": queue_class.value, "error": str(e)},
                )
                await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id, "queue_class": queue_class.value},
                )
                await asyncio.sleep(self.poll_interval)

    async def process_batch(self, queue_class: QueueClass, deliveries: list[Delivery]) -> list[str]:
        """
        Execute a batch of deliveries sharing one execution scope.

        A failing job only affects itself. Deliveries not started before
        shutdown are returned to their queue.

        Raises:
            ValueError: If the queue class does not hold executable jobs.

        Returns:
            Outcome per started delivery.
        """
        if queue_class not in EXECUTABLE_QUEUE_CLASSES:
            raise ValueError(f"Queue class {queue_class.value!r} is not executed by workers")

        outcomes = []
        async with ExecutionScope(name=f"{queue_class.value}-batch") as scope:
            for index, delivery in enumerate(deliveries):
                if self._stopping:
                    for remaining in deliveries[index:]:
                        await self.transport.nack(remaining, requeue=True)
                    break
                outcomes.append(await self.process_delivery(queue_class, delivery, scope))
        return outcomes

    async def process_delivery(
        self,
        queue_class: QueueClass,
        delivery: Delivery,
        scope: ExecutionScope,
    ) -> str:
        """
        Handle one delivery end to end.

        Returns:
            The outcome: "succeeded", "retried", "exhausted", "failed",
            "dispatched" (periodic occurrence handed on) or "requeued".
        """
        try:
            envelope = self.serializer.deserialize(delivery.body)
        except SerializationError as e:
            await self.publisher.publish_failed(
                delivery.body,
                TerminalReason.SERIALIZATION_ERROR,
                str(e),
                source_queue=delivery.queue,
            )
            await self.transport.nack(delivery, requeue=False)
            self._metrics.record_job_completed(queue_class.value, "failed", 0.0)
            return "failed"

        if envelope.is_periodic:
            return await self._dispatch_occurrence(delivery, envelope)

        start_time = time.monotonic()
        with job_log_context(
            job_id=str(envelope.id),
            job_type=envelope.job_type,
            attempt=envelope.attempt,
            queue_class=queue_class.value,
        ):
            try:
                with job_span(SPAN_EXECUTE_JOB, envelope, queue_class=queue_class.value):
                    await self._execute(envelope, queue_class, scope)
            except Exception as e:
                outcome = await self._handle_failure(delivery, envelope, e)
                self._metrics.record_job_completed(
                    queue_class.value, outcome, time.monotonic() - start_time
                )
                return outcome

            await self.transport.ack(delivery)
            duration = time.monotonic() - start_time
            self._metrics.record_job_completed(queue_class.value, "succeeded", duration)
            logger.info("Job completed successfully", extra={"duration": f"{duration:.3f}s"})
            return "succeeded"

    async def _execute(self, envelope: JobEnvelope, queue_class: QueueClass, scope: ExecutionScope) -> None:
        job = self.factory.create(envelope.job_type, scope)
        context = JobContext(
            job_id=envelope.id,
            job_type=envelope.job_type,
            attempt=envelope.attempt,
            max_attempts=self.retry_policy.max_attempts,
            queue_class=queue_class,
            arguments=None,
            worker_id=self.worker_id,
            deadline=self.clock() + timedelta(seconds=envelope.timeout),
            scope=scope,
        )

        logger.info("Executing job")
        try:
            await asyncio.wait_for(job.execute(envelope.arguments, context), timeout=envelope.timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutFailure(
                f"Job exceeded timeout of {envelope.timeout}s",
                job_id=envelope.id,
                job_type=envelope.job_type,
                attempt=envelope.attempt,
            ) from e

    async def _handle_failure(self, delivery: Delivery, envelope: JobEnvelope, error: Exception) -> str:
        """
        Publish the follow-up for a failed execution, then remove the original.

        The follow-up is written before the original is removed, so a
        broker outage at this point leads to a redelivery rather than a
        lost job.
        """
        message = (error.message if isinstance(error, ExecutionFailure) else str(error)) or type(error).__name__

        try:
            if isinstance(error, SerializationError):
                await self.publisher.publish_failed(
                    envelope, TerminalReason.SERIALIZATION_ERROR, message, source_queue=delivery.queue
                )
                outcome = "failed"
            else:
                decision = self.retry_policy.next_attempt(envelope, error)
                if isinstance(decision, Retry):
                    successor = envelope.successor(decision.delay_seconds, message, self.clock())
                    await self.publisher.publish_envelope(successor)
                    self._metrics.record_retry_scheduled(envelope.job_type)
                    logger.warning(
                        "Job failed, retry scheduled",
                        extra={
                            "error": message,
                            "next_attempt": successor.attempt,
                            "not_before": successor.not_before.isoformat(),
                        },
                    )
                    outcome = "retried"
                else:
                    terminal = RetriesExhausted(envelope.id, decision.attempts, last_error=message)
                    await self.publisher.publish_failed(
                        envelope, TerminalReason.RETRIES_EXHAUSTED, message, source_queue=delivery.queue
                    )
                    logger.error(str(terminal), extra={"error": terminal.last_error})
                    outcome = "exhausted"
        except TransportUnavailable as e:
            logger.error(
                "Could not publish failure follow-up, returning job to its queue",
                extra={"error": str(e)},
            )
            await self.transport.nack(delivery, requeue=True)
            return "requeued"

        await self.transport.nack(delivery, requeue=False)
        return outcome

    async def _dispatch_occurrence(self, delivery: Delivery, envelope: JobEnvelope) -> str:
        """Turn a claimed periodic occurrence into an immediate regular job."""
        occurrence = envelope.occurrence(self.clock())
        try:
            queue_class = await self.publisher.publish_envelope(occurrence)
        except TransportUnavailable as e:
            logger.error(
                "Could not dispatch periodic occurrence, returning it to its queue",
                extra={"periodic_id": envelope.periodic_id, "error": str(e)},
            )
            await self.transport.nack(delivery, requeue=True)
            return "requeued"
        await self.transport.ack(delivery)
        logger.info(
            "Periodic occurrence dispatched",
            extra={
                "periodic_id": envelope.periodic_id,
                "job_id": str(occurrence.id),
                "queue_class": queue_class.value,
            },
        )
        return "dispatched"


async def run_async() -> None:
    """Run a worker instance: worker pool plus periodic scheduler."""
    from jobdispatch.client import Dispatcher, load_jobs_module

    setup_logging()
    setup_metrics()
    setup_tracing()
    settings = get_settings()

    dispatcher = Dispatcher(settings=settings)
    load_jobs_module(dispatcher, settings.jobs_module)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    await dispatcher.start()
    try:
        await stop_requested.wait()
    finally:
        await dispatcher.stop()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
