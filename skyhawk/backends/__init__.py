"""Queue client implementations and the connection factory."""

from urllib.parse import urlsplit

from skyhawk.backends.base import (
    DEFAULT_CONNECT_ATTEMPTS,
    DEFAULT_CONNECT_INTERVAL,
    Delivery,
    QueueClient,
    Subscription,
    connect_with_retry,
)
from skyhawk.backends.memory import MemoryQueueClient
from skyhawk.backends.rabbitmq import RabbitMQQueueClient
from skyhawk.backends.redis import RedisQueueClient


async def connect(
    url: str,
    attempts: int = DEFAULT_CONNECT_ATTEMPTS,
    interval: float = DEFAULT_CONNECT_INTERVAL,
) -> QueueClient:
    """Connect to the broker named by ``url``, choosing the backend by scheme.

    ``amqp``/``amqps`` selects RabbitMQ, ``redis``/``rediss`` selects Redis
    and ``memory`` gives an in-process client.

    Raises:
        BrokerConnectionError: If the broker stays unreachable.
        ValueError: For an unknown scheme.
    """
    scheme = urlsplit(url).scheme.lower()
    if scheme in ("amqp", "amqps"):
        return await RabbitMQQueueClient.connect(url, attempts=attempts, interval=interval)
    if scheme in ("redis", "rediss"):
        return await RedisQueueClient.connect(url, attempts=attempts, interval=interval)
    if scheme == "memory":
        return MemoryQueueClient()
    raise ValueError(f"unknown queue backend scheme: {scheme!r}")


__all__ = [
    "Delivery",
    "MemoryQueueClient",
    "QueueClient",
    "RabbitMQQueueClient",
    "RedisQueueClient",
    "Subscription",
    "connect",
    "connect_with_retry",
]
