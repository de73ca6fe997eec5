"""
Integration tests for the Redis transport.

Skipped unless REDIS_URL points at a reachable Redis server.
"""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
import redis

from jobdispatch.transport.redis_transport import RedisTransport
from jobdispatch.types.envelope import utcnow


def redis_available() -> bool:
    url = os.environ.get("REDIS_URL")
    if not url:
        return False
    try:
        return bool(redis.Redis.from_url(url).ping())
    except redis.exceptions.RedisError:
        return False


pytestmark = pytest.mark.skipif(not redis_available(), reason="REDIS_URL not set or Redis unreachable")


@pytest.fixture
def prefix() -> str:
    return f"jobdispatch-test-{uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def redis_transport(redis_url: str, prefix: str) -> AsyncGenerator[RedisTransport]:
    transport = RedisTransport(
        redis_url,
        prefix=prefix,
        heartbeat_ttl_seconds=2,
        promote_interval_seconds=0.05,
        poll_interval_seconds=0.1,
        connect_retries=0,
    )
    await transport.connect()
    yield transport
    await transport.close()
    cleanup = redis.Redis.from_url(redis_url)
    keys = list(cleanup.scan_iter(f"{prefix}*"))
    if keys:
        cleanup.delete(*keys)


class TestRedisTransport:
    """Tests for queue semantics on Redis."""

    @pytest.mark.asyncio
    async def test_fifo_and_ack(self, redis_transport: RedisTransport, prefix: str):
        queue = f"{prefix}:regular"
        for body in (b"1", b"2", b"3"):
            await redis_transport.publish(queue, body, {"n": body.decode()})

        deliveries = await redis_transport.consume(queue, max_messages=2, timeout=0.1)

        assert [d.body for d in deliveries] == [b"1", b"2"]
        assert deliveries[0].headers == {"n": "1"}
        for delivery in deliveries:
            await redis_transport.ack(delivery)
        assert await redis_transport.queue_length(queue) == 1

    @pytest.mark.asyncio
    async def test_nack_requeue(self, redis_transport: RedisTransport, prefix: str):
        queue = f"{prefix}:regular"
        await redis_transport.publish(queue, b"x")
        [delivery] = await redis_transport.consume(queue, timeout=0.1)

        await redis_transport.nack(delivery, requeue=True)

        [again] = await redis_transport.consume(queue, timeout=0.1)
        assert again.body == b"x"

    @pytest.mark.asyncio
    async def test_held_message_promoted(self, redis_transport: RedisTransport, prefix: str):
        holding, target = f"{prefix}:delayed", f"{prefix}:retry"
        await redis_transport.publish_delayed(
            holding, target, b"later", deliver_at=utcnow() + timedelta(milliseconds=200)
        )

        assert await redis_transport.queue_length(holding) == 1
        assert await redis_transport.consume(target, timeout=0.05) == []

        [delivery] = await redis_transport.consume(target, timeout=2)
        assert delivery.body == b"later"

    @pytest.mark.asyncio
    async def test_claim_single_winner(self, redis_transport: RedisTransport):
        key = f"periodic:{uuid4().hex}:0.000"

        assert await redis_transport.claim(key, 60, owner="a")
        assert not await redis_transport.claim(key, 60, owner="b")
        assert await redis_transport.claim(key, 60, owner="a")

    @pytest.mark.asyncio
    async def test_close_returns_unacked(self, redis_url: str, redis_transport: RedisTransport, prefix: str):
        queue = f"{prefix}:regular"
        other = RedisTransport(redis_url, prefix=prefix, connect_retries=0)
        await other.connect()
        await other.publish(queue, b"work")
        assert len(await other.consume(queue, timeout=0.1)) == 1

        await other.close()

        [delivery] = await redis_transport.consume(queue, timeout=0.1)
        assert delivery.body == b"work"

    @pytest.mark.asyncio
    async def test_orphans_of_dead_consumer_recovered(self, redis_url: str, redis_transport: RedisTransport, prefix: str):
        queue = f"{prefix}:regular"
        dead = RedisTransport(redis_url, prefix=prefix, connect_retries=0)
        await dead.publish(queue, b"orphan")
        assert len(await dead.consume(queue, timeout=0.1)) == 1
        # No heartbeat was ever written for this consumer, so it counts as dead
        await dead.client.aclose()

        assert await redis_transport.recover_orphans() == 1
        [delivery] = await redis_transport.consume(queue, timeout=0.1)
        assert delivery.body == b"orphan"

    @pytest.mark.asyncio
    async def test_peek(self, redis_transport: RedisTransport, prefix: str):
        queue = f"{prefix}:failed"
        for body in (b"a", b"b"):
            await redis_transport.publish(queue, body)

        assert [d.body for d in await redis_transport.peek(queue, 10)] == [b"a", b"b"]
        assert await redis_transport.queue_length(queue) == 2
