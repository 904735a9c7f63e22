"""In-memory queue client for Skyhawk.

Suitable for development and testing. Queues live in the process and are
lost on termination, but the broker semantics the consumer loop relies on
are kept: idempotent declaration, prefetch-1 subscriptions, explicit
ack/nack, and redelivery of unacknowledged messages when a subscription
closes.
"""

import asyncio
from dataclasses import dataclass

from skyhawk.core.errors import DeclarationError


@dataclass
class _Envelope:
    body: bytes
    redelivered: bool = False


class _MemoryQueue:
    def __init__(self, name: str, durable: bool) -> None:
        self.name = name
        self.durable = durable
        self.ready: asyncio.Queue[_Envelope] = asyncio.Queue()


class MemoryDelivery:
    """Delivery handed out by a :class:`MemorySubscription`."""

    def __init__(self, subscription: "MemorySubscription", envelope: _Envelope) -> None:
        self._subscription = subscription
        self._envelope = envelope
        self.body = envelope.body
        self.redelivered = envelope.redelivered
        self.queue_name = subscription.queue_name
        self.settled = False

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError("delivery already acknowledged or rejected")
        self.settled = True
        self._subscription._release(self)

    async def ack(self) -> None:
        self._settle()

    async def nack(self, requeue: bool = True) -> None:
        self._settle()
        if requeue:
            self._subscription._queue.ready.put_nowait(_Envelope(self.body, redelivered=True))


class MemorySubscription:
    """Prefetch-1 consumer over one in-memory queue."""

    def __init__(self, queue: _MemoryQueue) -> None:
        self._queue = queue
        self.queue_name = queue.name
        self._unacked: MemoryDelivery | None = None
        self._closed = False

    def _release(self, delivery: MemoryDelivery) -> None:
        if self._unacked is delivery:
            self._unacked = None

    async def get(self, timeout: float | None = None) -> MemoryDelivery | None:
        """Retrieve the next delivery, blocking up to timeout seconds.

        Raises:
            RuntimeError: If the subscription is closed or still holds an
                unacknowledged delivery (prefetch is 1).
        """
        if self._closed:
            raise RuntimeError(f"subscription on {self.queue_name!r} is closed")
        if self._unacked is not None:
            raise RuntimeError("prefetch limit reached: settle the outstanding delivery first")
        try:
            if timeout is None:
                envelope = await self._queue.ready.get()
            else:
                envelope = await asyncio.wait_for(self._queue.ready.get(), timeout)
        except TimeoutError:
            return None
        delivery = MemoryDelivery(self, envelope)
        self._unacked = delivery
        return delivery

    async def close(self) -> None:
        """Close the subscription, returning an unacknowledged delivery to the queue."""
        if self._closed:
            return
        self._closed = True
        pending = self._unacked
        if pending is not None and not pending.settled:
            pending.settled = True
            self._unacked = None
            self._queue.ready.put_nowait(_Envelope(pending.body, redelivered=True))


class MemoryQueueClient:
    """Queue client backed by ``asyncio.Queue`` instances."""

    kind = "memory"

    def __init__(self) -> None:
        self._queues: dict[str, _MemoryQueue] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("queue client is closed")

    def _get(self, name: str) -> _MemoryQueue:
        try:
            return self._queues[name]
        except KeyError:
            raise LookupError(f"queue {name!r} is not declared") from None

    async def declare(self, name: str, durable: bool = True) -> None:
        self._check_open()
        if not name:
            raise DeclarationError(name, "queue name must not be empty")
        existing = self._queues.get(name)
        if existing is None:
            self._queues[name] = _MemoryQueue(name, durable)
            return
        if existing.durable != durable:
            raise DeclarationError(
                name,
                f"inequivalent arg 'durable': existing {existing.durable}, requested {durable}",
            )

    async def publish(self, body: bytes, queue_name: str) -> None:
        self._check_open()
        self._get(queue_name).ready.put_nowait(_Envelope(body))

    async def subscribe(self, queue_name: str) -> MemorySubscription:
        self._check_open()
        return MemorySubscription(self._get(queue_name))

    async def queue_length(self, queue_name: str) -> int:
        self._check_open()
        return self._get(queue_name).ready.qsize()

    def peek(self, queue_name: str) -> list[bytes]:
        """Return the bodies ready on a queue without consuming them."""
        queue = self._get(queue_name)
        # asyncio.Queue keeps its items in a deque named _queue
        return [envelope.body for envelope in list(queue.ready._queue)]  # type: ignore[attr-defined]

    async def close(self) -> None:
        self._closed = True
