"""
Unit tests for the in-memory broker and transport.
"""

import pytest

from jobdispatch.errors import TransportUnavailable
from jobdispatch.transport import create_transport
from jobdispatch.transport.base import OutgoingMessage
from jobdispatch.transport.memory import InMemoryBroker, InMemoryTransport
from jobdispatch.transport.redis_transport import RedisTransport


class TestInMemoryTransport:
    """Tests for delivery, acknowledgement and holding semantics."""

    @pytest.mark.asyncio
    async def test_fifo_delivery(self, transport: InMemoryTransport):
        for body in (b"1", b"2", b"3"):
            await transport.publish("q", body)

        deliveries = await transport.consume("q", max_messages=2, timeout=0)

        assert [d.body for d in deliveries] == [b"1", b"2"]
        assert await transport.queue_length("q") == 1
        assert transport.in_flight == 2

    @pytest.mark.asyncio
    async def test_consume_times_out_empty(self, transport: InMemoryTransport):
        assert await transport.consume("empty", timeout=0.01) == []

    @pytest.mark.asyncio
    async def test_nack_requeue_returns_to_front(self, transport: InMemoryTransport):
        await transport.publish("q", b"first")
        await transport.publish("q", b"second")
        [delivery] = await transport.consume("q", timeout=0)

        await transport.nack(delivery, requeue=True)
        [again] = await transport.consume("q", timeout=0)

        assert again.body == b"first"
        assert again.redelivered

    @pytest.mark.asyncio
    async def test_nack_without_requeue_drops(self, transport: InMemoryTransport):
        await transport.publish("q", b"x")
        [delivery] = await transport.consume("q", timeout=0)

        await transport.nack(delivery)

        assert await transport.queue_length("q") == 0
        assert transport.in_flight == 0

    @pytest.mark.asyncio
    async def test_close_returns_unacked_deliveries(self, broker: InMemoryBroker):
        first = InMemoryTransport(broker)
        await first.publish("q", b"a")
        await first.publish("q", b"b")
        [a, b] = await first.consume("q", max_messages=2, timeout=0)
        await first.ack(a)

        await first.close()

        second = InMemoryTransport(broker)
        [redelivered] = await second.consume("q", timeout=0)
        assert redelivered.body == b"b"
        assert redelivered.redelivered

    @pytest.mark.asyncio
    async def test_held_message_released_to_target(self, transport: InMemoryTransport, clock):
        await transport.publish_delayed(
            "holding", "ready", b"later", deliver_at=clock.now.replace(second=30)
        )

        assert await transport.queue_length("holding") == 1
        assert await transport.consume("ready", timeout=0) == []

        clock.advance(30)
        [delivery] = await transport.consume("ready", timeout=0)

        assert delivery.body == b"later"
        assert await transport.queue_length("holding") == 0

    def test_outgoing_message_requires_target_with_deliver_at(self, clock):
        with pytest.raises(ValueError):
            OutgoingMessage(queue="holding", body=b"", deliver_at=clock.now)

    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, transport: InMemoryTransport):
        await transport.publish("q", b"x", {"h": "v"})

        [peeked] = await transport.peek("q")

        assert peeked.headers == {"h": "v"}
        assert await transport.queue_length("q") == 1
        assert transport.in_flight == 0


class TestClaims:
    """Tests for cluster-wide claim keys."""

    @pytest.mark.asyncio
    async def test_single_winner(self, broker: InMemoryBroker):
        one, two = InMemoryTransport(broker), InMemoryTransport(broker)

        assert await one.claim("k", 60) is True
        assert await two.claim("k", 60) is False
        assert await one.claim("k", 60) is True

    @pytest.mark.asyncio
    async def test_claim_expires(self, broker: InMemoryBroker, clock):
        transport = InMemoryTransport(broker)
        assert await transport.claim("k", 60, owner="a")
        assert not await transport.claim("k", 60, owner="b")

        clock.advance(61)

        assert await transport.claim("k", 60, owner="b")

    @pytest.mark.asyncio
    async def test_expired_claims_are_dropped(self, broker: InMemoryBroker, clock):
        """Claims for past due instants do not accumulate."""
        transport = InMemoryTransport(broker)
        for index in range(3):
            assert await transport.claim(f"periodic:tick:{index}", 60)
        assert broker.claim_count == 3

        clock.advance(61)
        assert await transport.claim("periodic:tick:3", 60)

        assert broker.claim_count == 1


class TestBrokerOutage:
    """Tests for connection-level retry behavior."""

    @pytest.mark.asyncio
    async def test_unavailable_after_retries(self, broker: InMemoryBroker):
        transport = InMemoryTransport(broker, connect_retries=2, retry_backoff_seconds=0.001)
        broker.available = False

        with pytest.raises(TransportUnavailable):
            await transport.publish("q", b"x")
        assert not await transport.ping()

    @pytest.mark.asyncio
    async def test_recovers_within_retries(self, broker: InMemoryBroker):
        transport = InMemoryTransport(broker, connect_retries=3, retry_backoff_seconds=0.001)
        broker.available = False
        original = broker.ensure_available
        calls = []

        def flaky() -> None:
            calls.append(1)
            if len(calls) == 2:
                broker.available = True
            original()

        broker.ensure_available = flaky
        await transport.publish("q", b"x")

        assert len(calls) == 2
        assert await transport.queue_length("q") == 1


class TestCreateTransport:
    """Tests for building transports from settings."""

    def test_memory_backend(self, test_settings):
        assert isinstance(create_transport(test_settings), InMemoryTransport)

    def test_redis_backend(self, test_settings):
        settings = test_settings.model_copy(
            update={"transport_backend": "redis", "redis_url": "redis://localhost:6379/0"}
        )
        transport = create_transport(settings)
        assert isinstance(transport, RedisTransport)
        assert transport.consumer_id == "test-worker"

    def test_redis_requires_url(self, test_settings):
        with pytest.raises(ValueError):
            create_transport(test_settings.model_copy(update={"transport_backend": "redis"}))

    def test_unknown_backend(self, test_settings):
        with pytest.raises(ValueError):
            create_transport(test_settings.model_copy(update={"transport_backend": "carrier-pigeon"}))
