"""
Publisher.

Builds envelopes, routes them to a queue class and hands them to the
transport. Delayed envelopes are written to the holding queue with their
release time and release target; the transport performs the release.

Publishing inside `batch()` buffers messages and writes them in grouped
transport calls. A batch is not a transaction: messages already flushed
stay published if the batch body fails, and unflushed ones are dropped.
"""

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel

from jobdispatch.config import Settings, get_settings
from jobdispatch.constants import (
    HEADER_ATTEMPT,
    HEADER_ERROR,
    HEADER_JOB_ID,
    HEADER_JOB_TYPE,
    HEADER_QUEUE_CLASS,
    HEADER_SOURCE_QUEUE,
    HEADER_TERMINAL_REASON,
    SPAN_PUBLISH_JOB,
    QueueClass,
    TerminalReason,
)
from jobdispatch.errors import SerializationError
from jobdispatch.observability.metrics import MetricsCollector, get_metrics
from jobdispatch.observability.tracing import job_span
from jobdispatch.routing import queue_name, release_target, route
from jobdispatch.serialization import EnvelopeSerializer, Serializer
from jobdispatch.transport.base import OutgoingMessage, Transport
from jobdispatch.types.envelope import JobEnvelope, utcnow
from jobdispatch.worker.handlers import JobRegistry, get_registry

logger = logging.getLogger(__name__)

T = TypeVar("T")

@dataclass
class _BatchScope:
    messages: list[OutgoingMessage] = field(default_factory=list)
    open: bool = True


# Batch scope active in the current task, if any. Tasks spawned inside a
# scope inherit it and publish directly once it has closed.
_batch_scope: ContextVar[_BatchScope | None] = ContextVar("jobdispatch_batch_scope", default=None)


@dataclass(frozen=True)
class FailedMessage:
    """A message parked in the failed queue."""

    envelope: JobEnvelope | None
    reason: str
    error: str | None
    source_queue: str | None
    raw: bytes


class Publisher:
    """
    Publishes envelopes to the queue class chosen by the router.
    """

    def __init__(
        self,
        transport: Transport,
        serializer: Serializer | None = None,
        settings: Settings | None = None,
        registry: JobRegistry | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.transport = transport
        self.serializer = serializer or EnvelopeSerializer()
        self.registry = registry or get_registry()
        self.prefix = settings.redis_prefix
        self.default_timeout = settings.default_timeout_seconds
        self.long_running_threshold = settings.long_running_threshold_seconds
        self.batch_flush_size = settings.publish_batch_size
        self.clock = clock
        self._metrics = metrics or get_metrics()

    def queue_for(self, queue_class: QueueClass) -> str:
        """Physical queue name of a queue class."""
        return queue_name(queue_class, self.prefix)

    # ------------------------------------------------------------------
    # Envelope construction

    def build_envelope(
        self,
        job_type: str,
        arguments: bytes | BaseModel | dict[str, Any] | None = None,
        delay: float | timedelta | None = None,
        timeout: float | None = None,
    ) -> JobEnvelope:
        """
        Build an immediate or delayed envelope for a job type.

        Arguments are validated against the job type's schema when the type
        is registered locally; producers that do not register handlers may
        pass pre-serialized bytes.
        """
        definition = self.registry.get(job_type)
        if definition is not None:
            encoded = definition.encode_arguments(arguments)
            timeout = timeout or definition.timeout
        elif isinstance(arguments, bytes):
            encoded = arguments
        elif isinstance(arguments, BaseModel):
            encoded = arguments.model_dump_json().encode("utf-8")
        else:
            encoded = json.dumps(arguments or {}).encode("utf-8")

        not_before = None
        if delay is not None:
            if not isinstance(delay, timedelta):
                delay = timedelta(seconds=delay)
            if delay > timedelta(0):
                not_before = self.clock() + delay

        return JobEnvelope(
            job_type=job_type,
            arguments=encoded,
            timeout=timeout or self.default_timeout,
            not_before=not_before,
            enqueued_at=self.clock(),
        )

    def _message_for(
        self,
        envelope: JobEnvelope,
        extra_headers: dict[str, str] | None = None,
    ) -> tuple[QueueClass, OutgoingMessage]:
        queue_class = route(envelope, self.clock(), self.long_running_threshold)
        body = self.serializer.serialize(envelope)
        headers = {
            HEADER_JOB_ID: str(envelope.id),
            HEADER_JOB_TYPE: envelope.job_type,
            HEADER_ATTEMPT: str(envelope.attempt),
            HEADER_QUEUE_CLASS: queue_class.value,
        }
        headers.update(extra_headers or {})

        if queue_class == QueueClass.DELAYED:
            target = release_target(envelope, self.long_running_threshold)
            return queue_class, OutgoingMessage(
                queue=self.queue_for(QueueClass.DELAYED),
                body=body,
                headers=headers,
                deliver_at=envelope.not_before,
                target=self.queue_for(target),
            )
        return queue_class, OutgoingMessage(queue=self.queue_for(queue_class), body=body, headers=headers)

    # ------------------------------------------------------------------
    # Publishing

    async def publish(
        self,
        job_type: str,
        arguments: bytes | BaseModel | dict[str, Any] | None = None,
        *,
        delay: float | timedelta | None = None,
        timeout: float | None = None,
    ) -> JobEnvelope:
        """
        Publish a job. Fire-and-forget: job failures never surface here.

        Args:
            job_type: Registered job type identifier.
            arguments: Job arguments (bytes, dict or pydantic model).
            delay: Optional delay before the job may run.
            timeout: Execution budget in seconds. Defaults to the job type's
                timeout, then the configured default.

        Returns:
            The published envelope.

        Raises:
            TransportUnavailable: If the broker cannot be reached.
        """
        envelope = self.build_envelope(job_type, arguments, delay=delay, timeout=timeout)
        await self.publish_envelope(envelope)
        return envelope

    async def publish_envelope(
        self,
        envelope: JobEnvelope,
        headers: dict[str, str] | None = None,
    ) -> QueueClass:
        """Route and publish a prepared envelope. Returns its queue class."""
        queue_class, message = self._message_for(envelope, headers)

        with job_span(SPAN_PUBLISH_JOB, envelope, queue_class=queue_class.value):
            scope = _batch_scope.get()
            buffered = scope is not None and scope.open
            if not buffered:
                await self._write([message])
            else:
                scope.messages.append(message)
                if len(scope.messages) >= self.batch_flush_size:
                    await self._flush(scope.messages)

        logger.debug(
            "Job published",
            extra={
                "job_id": str(envelope.id),
                "job_type": envelope.job_type,
                "queue_class": queue_class.value,
                "attempt": envelope.attempt,
                "buffered": buffered,
            },
        )
        return queue_class

    async def _write(self, messages: list[OutgoingMessage]) -> None:
        await self.transport.publish_many(messages)
        for message in messages:
            self._metrics.record_job_published(
                queue_class=message.headers.get(HEADER_QUEUE_CLASS, "unknown"),
                job_type=message.headers.get(HEADER_JOB_TYPE, "unknown"),
            )

    async def _flush(self, buffer: list[OutgoingMessage]) -> None:
        if not buffer:
            return
        pending = list(buffer)
        buffer.clear()
        await self._write(pending)
        self._metrics.record_batch_flush()
        logger.info("Publish batch flushed", extra={"count": len(pending)})

    @asynccontextmanager
    async def batch(self) -> AsyncIterator["Publisher"]:
        """
        Buffer publishes made in this task and flush them on normal exit.

        Nested batch scopes join the outermost one. On error, buffered
        messages are discarded and the error propagates.
        """
        current = _batch_scope.get()
        if current is not None and current.open:
            yield self
            return

        scope = _BatchScope()
        token = _batch_scope.set(scope)
        try:
            yield self
        except BaseException:
            if scope.messages:
                logger.warning(
                    "Discarding unflushed batch publishes", extra={"count": len(scope.messages)}
                )
            scope.messages.clear()
            raise
        else:
            scope.open = False
            await self._flush(scope.messages)
        finally:
            scope.open = False
            _batch_scope.reset(token)

    async def run_batch(self, body: Callable[[], Awaitable[T]]) -> T:
        """Run `body` inside a batch scope and return its result."""
        async with self.batch():
            return await body()

    # ------------------------------------------------------------------
    # Failed queue

    async def publish_failed(
        self,
        body: JobEnvelope | bytes,
        reason: TerminalReason,
        error: str | None = None,
        source_queue: str | None = None,
    ) -> None:
        """
        Park a message in the failed queue with a terminal marker.

        Bypasses routing and batching: terminal moves are written immediately.
        """
        headers = {HEADER_TERMINAL_REASON: reason.value, HEADER_QUEUE_CLASS: QueueClass.FAILED.value}
        if isinstance(body, JobEnvelope):
            headers[HEADER_JOB_ID] = str(body.id)
            headers[HEADER_JOB_TYPE] = body.job_type
            headers[HEADER_ATTEMPT] = str(body.attempt)
            body = self.serializer.serialize(body.with_error(error))
        if error:
            headers[HEADER_ERROR] = error[:1000]
        if source_queue:
            headers[HEADER_SOURCE_QUEUE] = source_queue

        await self.transport.publish(self.queue_for(QueueClass.FAILED), body, headers)
        self._metrics.record_job_exhausted(reason.value)
        logger.warning(
            "Message moved to failed queue",
            extra={"reason": reason.value, "job_id": headers.get(HEADER_JOB_ID), "error": error},
        )

    def _failed_message(self, body: bytes, headers: dict[str, str]) -> FailedMessage:
        try:
            envelope = self.serializer.deserialize(body)
        except SerializationError:
            envelope = None
        return FailedMessage(
            envelope=envelope,
            reason=headers.get(HEADER_TERMINAL_REASON, "unknown"),
            error=headers.get(HEADER_ERROR),
            source_queue=headers.get(HEADER_SOURCE_QUEUE),
            raw=body,
        )

    async def peek_failed(self, limit: int = 50) -> list[FailedMessage]:
        """List the oldest failed messages without removing them."""
        deliveries = await self.transport.peek(self.queue_for(QueueClass.FAILED), limit)
        return [self._failed_message(d.body, d.headers) for d in deliveries]

    async def republish_failed(self, limit: int = 50) -> list[JobEnvelope]:
        """
        Move failed jobs back into circulation as fresh first attempts.

        Messages whose payload cannot be decoded stay in the failed queue.

        Returns:
            The republished envelopes.
        """
        deliveries = await self.transport.consume(
            self.queue_for(QueueClass.FAILED), max_messages=limit, timeout=0.01
        )
        republished = []
        undecodable = []
        for delivery in deliveries:
            try:
                envelope = self.serializer.deserialize(delivery.body)
            except SerializationError:
                undecodable.append(delivery)
                continue
            fresh = envelope.reset(self.clock())
            await self.publish_envelope(fresh)
            await self.transport.ack(delivery)
            republished.append(fresh)

        for delivery in undecodable:
            await self.transport.nack(delivery, requeue=True)

        if republished:
            logger.info("Republished failed jobs", extra={"count": len(republished)})
        return republished
