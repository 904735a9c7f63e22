"""Skyhawk - durable asynchronous delivery of security events."""

from skyhawk.backends import (
    MemoryQueueClient,
    QueueClient,
    RabbitMQQueueClient,
    RedisQueueClient,
    connect,
)
from skyhawk.core import (
    BrokerConnectionError,
    ConsumerLoop,
    ConsumerStats,
    DeclarationError,
    Handler,
    HandlerRegistry,
    MalformedMessageError,
    Message,
    NoopHandler,
    Outcome,
    PoolHandle,
    ProcessingError,
    PublishError,
    Publisher,
    SecurityEvent,
    SecurityEventHandler,
    SerializationError,
    Settings,
    StatsReporter,
    Supervisor,
    consume_message,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Message",
    "SecurityEvent",
    "Handler",
    "HandlerRegistry",
    "NoopHandler",
    "SecurityEventHandler",
    "Publisher",
    "ConsumerLoop",
    "ConsumerStats",
    "consume_message",
    "Supervisor",
    "PoolHandle",
    "StatsReporter",
    "Settings",
    # Errors and outcomes
    "BrokerConnectionError",
    "DeclarationError",
    "PublishError",
    "SerializationError",
    "ProcessingError",
    "MalformedMessageError",
    "Outcome",
    # Backends
    "QueueClient",
    "MemoryQueueClient",
    "RabbitMQQueueClient",
    "RedisQueueClient",
    "connect",
    # Meta
    "__version__",
]
