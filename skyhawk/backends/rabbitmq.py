"""RabbitMQ queue client using aio-pika.

Topology is the AMQP default exchange: a message published with routing key
``Q`` lands on the durable queue ``Q``. Messages are persistent.

Channel ownership:
- One shared publish channel, serialized by an ``asyncio.Lock``. Declares
  and publishes from concurrent consumer loops never interleave on it.
- One dedicated channel per subscription, with ``basic.qos(prefetch_count=1)``
  for fair dispatch. Acks and nacks travel on the subscription's channel.

The connection is opened with ``aio_pika.connect`` (not ``connect_robust``).
A connection dropped mid-session is NOT re-established: the drop is logged
and subsequent operations fail until the process is restarted.
"""

import asyncio
import logging
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)

from skyhawk.backends.base import (
    DEFAULT_CONNECT_ATTEMPTS,
    DEFAULT_CONNECT_INTERVAL,
    connect_with_retry,
)
from skyhawk.core.errors import BrokerConnectionError, DeclarationError
from skyhawk.core.logging import sanitize_url

logger = logging.getLogger("skyhawk.rabbitmq")

PREFETCH_COUNT = 1


class RabbitMQDelivery:
    """Adapter from an aio-pika incoming message to a Delivery."""

    def __init__(self, incoming: AbstractIncomingMessage, queue_name: str) -> None:
        self._incoming = incoming
        self.body = incoming.body
        self.redelivered = bool(incoming.redelivered)
        self.queue_name = queue_name

    async def ack(self) -> None:
        await self._incoming.ack()

    async def nack(self, requeue: bool = True) -> None:
        await self._incoming.nack(requeue=requeue)


class RabbitMQSubscription:
    """Prefetch-1 consumer on its own channel."""

    def __init__(self, channel: AbstractChannel, queue: AbstractQueue) -> None:
        self._channel = channel
        self._queue = queue
        self.queue_name = queue.name
        self._inbox: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue()
        self._consumer_tag: str | None = None

    async def start(self) -> None:
        self._consumer_tag = await self._queue.consume(self._inbox.put, no_ack=False)

    async def get(self, timeout: float | None = None) -> RabbitMQDelivery | None:
        try:
            if timeout is None:
                incoming = await self._inbox.get()
            else:
                incoming = await asyncio.wait_for(self._inbox.get(), timeout)
        except TimeoutError:
            return None
        return RabbitMQDelivery(incoming, self.queue_name)

    async def close(self) -> None:
        """Cancel the consumer and close the channel.

        The broker returns any unacknowledged delivery to the queue when the
        channel closes.
        """
        if self._channel.is_closed:
            return
        try:
            if self._consumer_tag is not None:
                await self._queue.cancel(self._consumer_tag)
        except Exception as e:
            logger.debug(f"Failed to cancel consumer on {self.queue_name}: {e}")
        finally:
            await self._channel.close()


class RabbitMQQueueClient:
    """Queue client over one AMQP 0-9-1 connection."""

    kind = "rabbitmq"

    def __init__(self, connection: AbstractConnection, channel: AbstractChannel) -> None:
        self._connection = connection
        self._channel = channel
        self._lock = asyncio.Lock()
        self._declared: dict[str, bool] = {}
        self._closing = False
        connection.close_callbacks.add(self._on_connection_closed)

    @classmethod
    async def connect(
        cls,
        url: str,
        attempts: int = DEFAULT_CONNECT_ATTEMPTS,
        interval: float = DEFAULT_CONNECT_INTERVAL,
    ) -> "RabbitMQQueueClient":
        """Dial the broker with bounded fixed-interval retries and open a channel.

        Raises:
            BrokerConnectionError: If the broker stays unreachable or the
                publish channel cannot be opened.
        """
        target = sanitize_url(url)
        connection = await connect_with_retry(
            lambda: aio_pika.connect(url),
            target=target,
            attempts=attempts,
            interval=interval,
            logger=logger,
        )
        try:
            channel = await connection.channel()
        except Exception as e:
            await connection.close()
            raise BrokerConnectionError(
                f"failed to open channel on {target}", attempts=1, last_error=str(e)
            ) from e

        logger.info(f"Connected to RabbitMQ at {target}")
        return cls(connection, channel)

    def _on_connection_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closing:
            return
        logger.error(
            "RabbitMQ connection lost; it will not be re-established automatically. "
            "Restart the process to resume delivery.",
            extra={"error": str(exc) if exc else None},
        )

    async def _publish_channel(self) -> AbstractChannel:
        # A channel-level error (e.g. inequivalent declare) closes the channel
        if self._channel.is_closed:
            self._channel = await self._connection.channel()
        return self._channel

    async def declare(self, name: str, durable: bool = True) -> None:
        if self._declared.get(name) == durable:
            return
        async with self._lock:
            try:
                channel = await self._publish_channel()
                await channel.declare_queue(name, durable=durable)
            except Exception as e:
                raise DeclarationError(name, str(e)) from e
        self._declared[name] = durable

    async def publish(self, body: bytes, queue_name: str) -> None:
        message = Message(
            body=body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        async with self._lock:
            channel = await self._publish_channel()
            await channel.default_exchange.publish(message, routing_key=queue_name)

    async def subscribe(self, queue_name: str) -> RabbitMQSubscription:
        channel = await self._connection.channel()
        try:
            await channel.set_qos(prefetch_count=PREFETCH_COUNT)
            queue = await channel.declare_queue(
                queue_name, durable=self._declared.get(queue_name, True)
            )
            subscription = RabbitMQSubscription(channel, queue)
            await subscription.start()
        except Exception as e:
            if not channel.is_closed:
                await channel.close()
            raise DeclarationError(queue_name, str(e)) from e
        return subscription

    async def queue_length(self, queue_name: str) -> int:
        # Passive declare on a throwaway channel: a missing queue closes that
        # channel with 404 instead of the shared publish channel.
        channel = await self._connection.channel()
        try:
            queue = await channel.declare_queue(queue_name, passive=True)
            return int(queue.declaration_result.message_count)
        finally:
            if not channel.is_closed:
                await channel.close()

    async def close(self) -> None:
        self._closing = True
        if not self._channel.is_closed:
            await self._channel.close()
        if not self._connection.is_closed:
            await self._connection.close()
        logger.info("Closed RabbitMQ connection")
