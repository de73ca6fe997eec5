"""
Redis-backed transport.

Layout:
- ready queues are lists (LPUSH to publish, BLMOVE from the right to consume)
- every consumed message is moved into a per-consumer processing list and
  removed from it on ack, so a dead consumer's deliveries can be recovered
- holding queues are sorted sets scored by release time; a promoter task
  moves due members to their target list atomically
- liveness of a consumer is a heartbeat key with a TTL
"""

import asyncio
import base64
import json
import logging
from collections.abc import Sequence
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobdispatch.transport.base import Delivery, OutgoingMessage, Transport
from jobdispatch.types.envelope import utcnow

logger = logging.getLogger(__name__)

# KEYS[1] holding zset; ARGV[1] now (unix seconds); ARGV[2] max members to move
PROMOTE_LUA = """
local items = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, raw in ipairs(items) do
  redis.call('ZREM', KEYS[1], raw)
  local held = cjson.decode(raw)
  redis.call('LPUSH', held['target'], held['payload'])
end
return #items
"""


def _encode(body: bytes, headers: dict[str, str]) -> str:
    return json.dumps(
        {
            "id": uuid4().hex,
            "headers": headers,
            "body": base64.b64encode(body).decode("ascii"),
        }
    )


def _decode(raw: str) -> tuple[bytes, dict[str, str]]:
    data = json.loads(raw)
    return base64.b64decode(data["body"]), data.get("headers") or {}


class RedisTransport(Transport):
    """One consumer/publisher connection pool to Redis."""

    connection_errors = (RedisConnectionError, RedisTimeoutError, ConnectionError)

    def __init__(
        self,
        redis_url: str,
        prefix: str = "jobdispatch",
        consumer_id: str | None = None,
        heartbeat_ttl_seconds: int = 30,
        promote_interval_seconds: float = 0.5,
        poll_interval_seconds: float = 1.0,
        connect_retries: int = 5,
        retry_backoff_seconds: float = 0.5,
        client: redis.Redis | None = None,
    ):
        super().__init__(connect_retries=connect_retries, retry_backoff_seconds=retry_backoff_seconds)
        self._redis_url = redis_url
        self.prefix = prefix.strip(":")
        self.consumer_id = consumer_id or uuid4().hex
        self.heartbeat_ttl_seconds = heartbeat_ttl_seconds
        self.promote_interval_seconds = promote_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._client = client
        self._promote = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Keys

    def _heartbeat_key(self, consumer_id: str) -> str:
        return f"{self.prefix}:consumer:{consumer_id}"

    def _processing_key(self, queue: str, consumer_id: str | None = None) -> str:
        return f"{queue}:processing:{consumer_id or self.consumer_id}"

    @property
    def _processing_index_key(self) -> str:
        return f"{self.prefix}:processing"

    @property
    def _holding_index_key(self) -> str:
        return f"{self.prefix}:holding"

    def _claim_key(self, key: str) -> str:
        return f"{self.prefix}:claim:{key}"

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def connect(self) -> None:
        if self._tasks:
            return
        await self._with_retry("connect", self.client.ping)
        self._promote = self.client.register_script(PROMOTE_LUA)
        await self._heartbeat()
        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="transport.redis.heartbeat"))
        self._tasks.append(asyncio.create_task(self._promote_loop(), name="transport.redis.promote"))
        self._tasks.append(asyncio.create_task(self._recovery_loop(), name="transport.redis.recovery"))
        logger.info(
            "Redis transport connected",
            extra={"consumer_id": self.consumer_id, "prefix": self.prefix},
        )

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._client is None:
            return
        try:
            returned = await self._return_processing(self.consumer_id)
            await self.client.delete(self._heartbeat_key(self.consumer_id))
            if returned:
                logger.info(
                    "Returned unacknowledged deliveries",
                    extra={"consumer_id": self.consumer_id, "count": returned},
                )
        except self.connection_errors as e:
            # Deliveries are recovered by other consumers once our heartbeat expires
            logger.warning("Could not return deliveries on close", extra={"error": str(e)})
        finally:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Publishing

    async def declare_queue(self, queue: str) -> None:
        # Redis creates keys on first write
        return None

    async def publish_many(self, messages: Sequence[OutgoingMessage]) -> None:
        if not messages:
            return
        await self._with_retry("publish", self._publish_pipeline, messages)

    async def _publish_pipeline(self, messages: Sequence[OutgoingMessage]) -> None:
        async with self.client.pipeline(transaction=False) as pipe:
            for message in messages:
                payload = _encode(message.body, message.headers)
                if message.deliver_at is None:
                    pipe.lpush(message.queue, payload)
                else:
                    held = json.dumps({"target": message.target, "payload": payload})
                    pipe.zadd(message.queue, {held: message.deliver_at.timestamp()})
                    pipe.sadd(self._holding_index_key, message.queue)
            await pipe.execute()

    # ------------------------------------------------------------------
    # Consuming

    async def consume(
        self,
        queue: str,
        max_messages: int = 1,
        timeout: float | None = None,
    ) -> list[Delivery]:
        return await self._with_retry("consume", self._consume, queue, max_messages, timeout)

    async def _consume(self, queue: str, max_messages: int, timeout: float | None) -> list[Delivery]:
        processing = self._processing_key(queue)
        await self.client.sadd(self._processing_index_key, f"{queue}|{self.consumer_id}")

        wait = timeout if timeout is not None else self.poll_interval_seconds
        raw = await self.client.blmove(queue, processing, wait, "RIGHT", "LEFT")
        if raw is None:
            return []

        raws = [raw]
        while len(raws) < max_messages:
            raw = await self.client.lmove(queue, processing, "RIGHT", "LEFT")
            if raw is None:
                break
            raws.append(raw)

        deliveries = []
        for raw in raws:
            body, headers = _decode(raw)
            deliveries.append(
                Delivery(
                    queue=queue,
                    body=body,
                    headers=headers,
                    tag=raw,
                )
            )
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        await self._with_retry(
            "ack", self.client.lrem, self._processing_key(delivery.queue), 1, delivery.tag
        )

    async def nack(self, delivery: Delivery, requeue: bool = False) -> None:
        await self._with_retry("nack", self._nack, delivery, requeue)

    async def _nack(self, delivery: Delivery, requeue: bool) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_key(delivery.queue), 1, delivery.tag)
            if requeue:
                pipe.rpush(delivery.queue, delivery.tag)
            await pipe.execute()

    # ------------------------------------------------------------------
    # Coordination and inspection

    async def claim(self, key: str, ttl_seconds: int, owner: str | None = None) -> bool:
        return await self._with_retry("claim", self._claim, key, ttl_seconds, owner or self.consumer_id)

    async def _claim(self, key: str, ttl_seconds: int, owner: str) -> bool:
        claim_key = self._claim_key(key)
        if await self.client.set(claim_key, owner, nx=True, ex=ttl_seconds):
            return True
        return await self.client.get(claim_key) == owner

    async def queue_length(self, queue: str) -> int:
        return await self._with_retry("queue_length", self._queue_length, queue)

    async def _queue_length(self, queue: str) -> int:
        key_type = await self.client.type(queue)
        if key_type == "zset":
            return await self.client.zcard(queue)
        if key_type == "list":
            return await self.client.llen(queue)
        return 0

    async def peek(self, queue: str, limit: int = 50) -> list[Delivery]:
        raws = await self._with_retry("peek", self.client.lrange, queue, -limit, -1)
        deliveries = []
        for raw in reversed(raws):
            body, headers = _decode(raw)
            deliveries.append(Delivery(queue=queue, body=body, headers=headers, tag=raw))
        return deliveries

    # ------------------------------------------------------------------
    # Background tasks

    async def _heartbeat(self) -> None:
        await self.client.set(
            self._heartbeat_key(self.consumer_id), "1", ex=self.heartbeat_ttl_seconds
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.heartbeat_ttl_seconds / 3)
                await self._heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    async def promote_due(self, batch: int = 100) -> int:
        """Release held messages whose time has come. Returns the number moved."""
        if self._promote is None:
            self._promote = self.client.register_script(PROMOTE_LUA)
        moved = 0
        now = utcnow().timestamp()
        for holding in await self.client.smembers(self._holding_index_key):
            moved += int(await self._promote(keys=[holding], args=[now, batch]))
        return moved

    async def _promote_loop(self) -> None:
        while True:
            try:
                moved = await self.promote_due()
                if moved:
                    logger.debug("Released held messages", extra={"count": moved})
                await asyncio.sleep(0 if moved else self.promote_interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in promote loop: {e}")
                await asyncio.sleep(self.promote_interval_seconds)

    async def _return_processing(self, consumer_id: str) -> int:
        """Move a consumer's unacknowledged deliveries back to their queues."""
        returned = 0
        for member in await self.client.smembers(self._processing_index_key):
            queue, _, owner = member.rpartition("|")
            if owner != consumer_id:
                continue
            processing = self._processing_key(queue, consumer_id)
            while await self.client.lmove(processing, queue, "LEFT", "RIGHT") is not None:
                returned += 1
            await self.client.srem(self._processing_index_key, member)
        return returned

    async def recover_orphans(self) -> int:
        """Return deliveries held by consumers whose heartbeat has expired."""
        recovered = 0
        owners = {
            member.rpartition("|")[2]
            for member in await self.client.smembers(self._processing_index_key)
        }
        for owner in owners:
            if owner == self.consumer_id:
                continue
            if await self.client.exists(self._heartbeat_key(owner)):
                continue
            count = await self._return_processing(owner)
            if count:
                logger.warning(
                    "Recovered deliveries from dead consumer",
                    extra={"consumer_id": owner, "count": count},
                )
            recovered += count
        return recovered

    async def _recovery_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.heartbeat_ttl_seconds)
                await self.recover_orphans()
            except self.connection_errors as e:
                logger.warning("Orphan recovery skipped, broker unreachable", extra={"error": str(e)})
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in recovery loop: {e}")
