"""
In-process broker.

Models the broker semantics the dispatcher relies on (per-connection
ownership of unacknowledged deliveries, TTL-style delayed release, claim
keys) inside one event loop. Used for single-process deployments and tests;
several InMemoryTransport connections sharing one InMemoryBroker behave like
independent instances talking to the same broker.
"""

import asyncio
import heapq
import itertools
import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from jobdispatch.transport.base import Delivery, OutgoingMessage, Transport
from jobdispatch.types.envelope import utcnow

logger = logging.getLogger(__name__)


class BrokerUnavailableError(ConnectionError):
    """Raised by an InMemoryBroker that has been taken offline."""


@dataclass
class _StoredMessage:
    body: bytes
    headers: dict[str, str]
    id: str = field(default_factory=lambda: uuid4().hex)
    redelivered: bool = False


class InMemoryBroker:
    """
    Shared broker state.

    Queues are FIFO deques; held messages sit in a heap ordered by release
    time and are moved to their target queue lazily whenever a queue is
    read.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.available = True
        self._queues: dict[str, deque[_StoredMessage]] = {}
        self._held: list[tuple[float, int, str, str, _StoredMessage]] = []
        self._claims: dict[str, tuple[str, float]] = {}
        self._claim_expiry: list[tuple[float, str]] = []
        self._sequence = itertools.count()
        self._changed = asyncio.Condition()

    def ensure_available(self) -> None:
        if not self.available:
            raise BrokerUnavailableError("in-memory broker is offline")

    def queue(self, name: str) -> deque[_StoredMessage]:
        return self._queues.setdefault(name, deque())

    def held_count(self, holding_queue: str) -> int:
        return sum(1 for entry in self._held if entry[2] == holding_queue)

    def promote_due(self) -> int:
        """Move held messages whose release time has passed to their targets."""
        now = self.clock().timestamp()
        moved = 0
        while self._held and self._held[0][0] <= now:
            _, _, _, target, message = heapq.heappop(self._held)
            self.queue(target).append(message)
            moved += 1
        return moved

    def next_release_in(self) -> float | None:
        if not self._held:
            return None
        return max(0.0, self._held[0][0] - self.clock().timestamp())

    async def put(self, message: OutgoingMessage) -> None:
        stored = _StoredMessage(body=message.body, headers=dict(message.headers))
        if message.deliver_at is not None:
            heapq.heappush(
                self._held,
                (message.deliver_at.timestamp(), next(self._sequence), message.queue, message.target, stored),
            )
        else:
            self.queue(message.queue).append(stored)
        await self.notify()

    async def requeue(self, queue: str, message: _StoredMessage) -> None:
        message.redelivered = True
        self.queue(queue).appendleft(message)
        await self.notify()

    async def notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def wait_for_change(self, timeout: float) -> None:
        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    @property
    def claim_count(self) -> int:
        return len(self._claims)

    def _expire_claims(self, now: float) -> None:
        while self._claim_expiry and self._claim_expiry[0][0] <= now:
            _, key = heapq.heappop(self._claim_expiry)
            current = self._claims.get(key)
            if current is not None and current[1] <= now:
                del self._claims[key]

    def claim(self, key: str, ttl_seconds: int, owner: str) -> bool:
        now = self.clock().timestamp()
        self._expire_claims(now)
        current = self._claims.get(key)
        if current is not None:
            return current[0] == owner
        expires_at = now + ttl_seconds
        self._claims[key] = (owner, expires_at)
        heapq.heappush(self._claim_expiry, (expires_at, key))
        return True


class InMemoryTransport(Transport):
    """One connection to an InMemoryBroker."""

    def __init__(
        self,
        broker: InMemoryBroker | None = None,
        connect_retries: int = 0,
        retry_backoff_seconds: float = 0.01,
        poll_interval: float = 0.05,
    ):
        super().__init__(connect_retries=connect_retries, retry_backoff_seconds=retry_backoff_seconds)
        self.broker = broker or InMemoryBroker()
        self.poll_interval = poll_interval
        self.connection_id = uuid4().hex
        self._unacked: dict[str, tuple[str, _StoredMessage]] = {}
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._unacked)

    async def close(self) -> None:
        """Return every unacknowledged delivery to the front of its queue."""
        if self._closed:
            return
        self._closed = True
        pending = list(self._unacked.values())
        self._unacked.clear()
        for queue, message in reversed(pending):
            await self.broker.requeue(queue, message)
        if pending:
            logger.info(
                "Returned unacknowledged deliveries",
                extra={"connection_id": self.connection_id, "count": len(pending)},
            )

    async def declare_queue(self, queue: str) -> None:
        self.broker.queue(queue)

    async def publish_many(self, messages: Sequence[OutgoingMessage]) -> None:
        for message in messages:
            await self._with_retry("publish", self._put, message)

    async def _put(self, message: OutgoingMessage) -> None:
        self.broker.ensure_available()
        await self.broker.put(message)

    async def consume(
        self,
        queue: str,
        max_messages: int = 1,
        timeout: float | None = None,
    ) -> list[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout if timeout is not None else self.poll_interval)

        while True:
            deliveries = await self._with_retry("consume", self._take, queue, max_messages)
            if deliveries:
                return deliveries
            remaining = deadline - loop.time()
            if remaining <= 0:
                return []
            release_in = self.broker.next_release_in()
            wait = min(remaining, self.poll_interval if release_in is None else max(release_in, 0.001))
            await self.broker.wait_for_change(wait)

    async def _take(self, queue: str, max_messages: int) -> list[Delivery]:
        self.broker.ensure_available()
        if self._closed:
            raise ConnectionError("connection closed")
        self.broker.promote_due()
        source = self.broker.queue(queue)
        deliveries = []
        while source and len(deliveries) < max_messages:
            message = source.popleft()
            tag = uuid4().hex
            self._unacked[tag] = (queue, message)
            deliveries.append(
                Delivery(
                    queue=queue,
                    body=message.body,
                    headers=dict(message.headers),
                    tag=tag,
                    redelivered=message.redelivered,
                )
            )
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        self._unacked.pop(delivery.tag, None)

    async def nack(self, delivery: Delivery, requeue: bool = False) -> None:
        entry = self._unacked.pop(delivery.tag, None)
        if entry is not None and requeue:
            queue, message = entry
            await self.broker.requeue(queue, message)

    async def claim(self, key: str, ttl_seconds: int, owner: str | None = None) -> bool:
        return await self._with_retry("claim", self._claim, key, ttl_seconds, owner or self.connection_id)

    async def _claim(self, key: str, ttl_seconds: int, owner: str) -> bool:
        self.broker.ensure_available()
        return self.broker.claim(key, ttl_seconds, owner)

    async def queue_length(self, queue: str) -> int:
        return await self._with_retry("queue_length", self._queue_length, queue)

    async def _queue_length(self, queue: str) -> int:
        self.broker.ensure_available()
        self.broker.promote_due()
        return len(self.broker.queue(queue)) + self.broker.held_count(queue)

    async def peek(self, queue: str, limit: int = 50) -> list[Delivery]:
        return await self._with_retry("peek", self._peek, queue, limit)

    async def _peek(self, queue: str, limit: int) -> list[Delivery]:
        self.broker.ensure_available()
        self.broker.promote_due()
        return [
            Delivery(queue=queue, body=message.body, headers=dict(message.headers), tag=message.id)
            for message in itertools.islice(self.broker.queue(queue), limit)
        ]
