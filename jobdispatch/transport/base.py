"""
Transport abstraction.

A transport is one connection to a message broker. It offers durable named
queues with at-least-once delivery: consumed messages stay owned by the
consuming connection until they are acknowledged, and return to their queue
when negatively acknowledged with requeue or when the connection is lost.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from jobdispatch.errors import TransportUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OutgoingMessage:
    """
    A message to publish.

    When deliver_at is set the message is held in `queue` (a holding
    construct) and released into `target` once deliver_at elapses.
    """

    queue: str
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    deliver_at: datetime | None = None
    target: str | None = None

    def __post_init__(self) -> None:
        if (self.deliver_at is None) != (self.target is None):
            raise ValueError("deliver_at and target must be set together")


@dataclass(frozen=True)
class Delivery:
    """A consumed message. `tag` is the handle used to ack or nack it."""

    queue: str
    body: bytes
    headers: dict[str, str]
    tag: str
    redelivered: bool = False


class Transport(ABC):
    """
    Broker connection used by publishers and consumers.

    Implementations must be safe for concurrent use by many coroutines on
    the same event loop.
    """

    # Exceptions that indicate the broker is unreachable
    connection_errors: tuple[type[BaseException], ...] = (ConnectionError,)

    def __init__(self, connect_retries: int = 5, retry_backoff_seconds: float = 0.5):
        self.connect_retries = connect_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _with_retry(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Run a broker operation, retrying connection failures with backoff.

        Raises:
            TransportUnavailable: If the broker is still unreachable after
                the configured number of retries.
        """
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except self.connection_errors as e:
                attempt += 1
                if attempt > self.connect_retries:
                    raise TransportUnavailable(
                        f"Transport operation '{operation}' failed after {attempt} attempts: {e}"
                    ) from e
                delay = self.retry_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "Transport operation failed, retrying",
                    extra={"operation": operation, "attempt": attempt, "delay": delay, "error": str(e)},
                )
                await asyncio.sleep(delay)

    async def connect(self) -> None:
        """Open the connection. Idempotent."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection, returning unacknowledged deliveries to their queues."""

    @abstractmethod
    async def declare_queue(self, queue: str) -> None:
        """Declare a durable queue. Idempotent."""

    @abstractmethod
    async def publish_many(self, messages: Sequence[OutgoingMessage]) -> None:
        """
        Publish messages in one grouped write.

        Not atomic: on failure, messages written before the failing one
        stay published.
        """

    async def publish(self, queue: str, body: bytes, headers: dict[str, str] | None = None) -> None:
        await self.publish_many([OutgoingMessage(queue=queue, body=body, headers=headers or {})])

    async def publish_delayed(
        self,
        holding_queue: str,
        target: str,
        body: bytes,
        deliver_at: datetime,
        headers: dict[str, str] | None = None,
    ) -> None:
        await self.publish_many(
            [
                OutgoingMessage(
                    queue=holding_queue,
                    body=body,
                    headers=headers or {},
                    deliver_at=deliver_at,
                    target=target,
                )
            ]
        )

    @abstractmethod
    async def consume(
        self,
        queue: str,
        max_messages: int = 1,
        timeout: float | None = None,
    ) -> list[Delivery]:
        """
        Receive up to max_messages from a queue.

        Blocks up to `timeout` seconds for the first message and returns an
        empty list if none arrived.
        """

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Remove a delivery permanently."""

    @abstractmethod
    async def nack(self, delivery: Delivery, requeue: bool = False) -> None:
        """Reject a delivery, optionally returning it to its queue."""

    @abstractmethod
    async def claim(self, key: str, ttl_seconds: int, owner: str | None = None) -> bool:
        """
        Cluster-wide set-if-absent.

        Returns True for exactly one owner per key until the TTL expires.
        Claiming again with the same owner succeeds, so an owner can retry
        work it claimed but did not finish.
        """

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Number of ready (or held) messages in a queue."""

    @abstractmethod
    async def peek(self, queue: str, limit: int = 50) -> list[Delivery]:
        """Oldest messages of a queue without consuming them."""

    async def ping(self) -> bool:
        """Check broker reachability."""
        try:
            await self.queue_length("__ping__")
            return True
        except (TransportUnavailable, *self.connection_errors):
            return False
