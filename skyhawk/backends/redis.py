"""Redis list backend for Skyhawk.

Reliable-queue pattern:
- Publish: LPUSH onto ``skyhawk:queue:<name>``
- Consume: BLMOVE from the queue's right end onto a per-subscription
  processing list, so an in-flight message is never only in client memory
- Ack: LREM from the processing list
- Nack with requeue: LREM + RPUSH back onto the consuming end of the queue

Redis has no channel-level redelivery. Closing a subscription moves its
processing list back onto the queue; a process that dies without closing
leaves the message in its processing list for an operator to recover.
"""

from __future__ import annotations

import hashlib
import logging
from uuid import uuid4

import redis.asyncio as redis

from skyhawk.backends.base import (
    DEFAULT_CONNECT_ATTEMPTS,
    DEFAULT_CONNECT_INTERVAL,
    connect_with_retry,
)
from skyhawk.core.errors import DeclarationError
from skyhawk.core.logging import sanitize_url

logger = logging.getLogger("skyhawk.redis")

KEY_PREFIX = "skyhawk:queue:"
REGISTRY_KEY = "skyhawk:queues"


def _queue_key(name: str) -> str:
    return f"{KEY_PREFIX}{name}"


def _redelivered_key(name: str) -> str:
    return f"{KEY_PREFIX}{name}:redelivered"


def _fingerprint(body: bytes) -> str:
    return hashlib.sha1(body).hexdigest()


class RedisDelivery:
    """Delivery parked on a subscription's processing list."""

    def __init__(self, subscription: RedisSubscription, body: bytes, redelivered: bool) -> None:
        self._subscription = subscription
        self.body = body
        self.redelivered = redelivered
        self.queue_name = subscription.queue_name

    async def ack(self) -> None:
        await self._subscription._settle(self, requeue=False)

    async def nack(self, requeue: bool = True) -> None:
        await self._subscription._settle(self, requeue=requeue)


class RedisSubscription:
    """Prefetch-1 consumer over one Redis list."""

    def __init__(self, client: redis.Redis, queue_name: str) -> None:
        self._client = client
        self.queue_name = queue_name
        self._queue_key = _queue_key(queue_name)
        self._redelivered_key = _redelivered_key(queue_name)
        self._processing_key = f"{self._queue_key}:processing:{uuid4().hex[:8]}"
        self._unacked: RedisDelivery | None = None

    async def get(self, timeout: float | None = None) -> RedisDelivery | None:
        if self._unacked is not None:
            raise RuntimeError("prefetch limit reached: settle the outstanding delivery first")
        body = await self._client.blmove(
            self._queue_key,
            self._processing_key,
            timeout if timeout is not None else 0,
            src="RIGHT",
            dest="LEFT",
        )
        if body is None:
            return None
        redelivered = bool(await self._client.hexists(self._redelivered_key, _fingerprint(body)))
        self._unacked = RedisDelivery(self, body, redelivered)
        return self._unacked

    async def _settle(self, delivery: RedisDelivery, requeue: bool) -> None:
        if self._unacked is not delivery:
            raise RuntimeError("delivery already acknowledged or rejected")
        fingerprint = _fingerprint(delivery.body)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_key, 1, delivery.body)
            if requeue:
                pipe.hincrby(self._redelivered_key, fingerprint, 1)
                pipe.rpush(self._queue_key, delivery.body)
            else:
                pipe.hdel(self._redelivered_key, fingerprint)
            await pipe.execute()
        self._unacked = None

    async def close(self) -> None:
        """Return everything on the processing list to the queue."""
        while True:
            body = await self._client.lmove(
                self._processing_key, self._queue_key, src="LEFT", dest="RIGHT"
            )
            if body is None:
                break
            await self._client.hincrby(self._redelivered_key, _fingerprint(body), 1)
        self._unacked = None


class RedisQueueClient:
    """Queue client over a shared ``redis.asyncio`` connection pool.

    The pool hands each command its own connection, so publishes from
    concurrent consumer loops never share a socket.
    """

    kind = "redis"

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    async def connect(
        cls,
        url: str,
        attempts: int = DEFAULT_CONNECT_ATTEMPTS,
        interval: float = DEFAULT_CONNECT_INTERVAL,
    ) -> RedisQueueClient:
        """Create a client and verify it with PING, with bounded retries."""
        client = redis.from_url(url)
        target = sanitize_url(url)

        async def dial() -> redis.Redis:
            await client.ping()
            return client

        try:
            await connect_with_retry(
                dial, target=target, attempts=attempts, interval=interval, logger=logger
            )
        except Exception:
            await client.aclose()
            raise
        logger.info(f"Connected to Redis at {target}")
        return cls(client)

    async def declare(self, name: str, durable: bool = True) -> None:
        if not name:
            raise DeclarationError(name, "queue name must not be empty")
        wanted = "durable" if durable else "transient"
        try:
            await self._client.hsetnx(REGISTRY_KEY, name, wanted)
            existing = await self._client.hget(REGISTRY_KEY, name)
        except Exception as e:
            raise DeclarationError(name, str(e)) from e
        if existing is not None and existing.decode() != wanted:
            raise DeclarationError(
                name, f"inequivalent arg 'durable': existing {existing.decode()}, requested {wanted}"
            )

    async def _require_declared(self, name: str) -> None:
        if not await self._client.hexists(REGISTRY_KEY, name):
            raise LookupError(f"queue {name!r} is not declared")

    async def publish(self, body: bytes, queue_name: str) -> None:
        await self._require_declared(queue_name)
        await self._client.lpush(_queue_key(queue_name), body)

    async def subscribe(self, queue_name: str) -> RedisSubscription:
        await self._require_declared(queue_name)
        return RedisSubscription(self._client, queue_name)

    async def queue_length(self, queue_name: str) -> int:
        await self._require_declared(queue_name)
        return int(await self._client.llen(_queue_key(queue_name)))

    async def delete_queue(self, queue_name: str) -> None:
        """Delete a queue and its bookkeeping (for testing)."""
        await self._client.delete(_queue_key(queue_name), _redelivered_key(queue_name))
        await self._client.hdel(REGISTRY_KEY, queue_name)

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Closed Redis connection")
