"""Core components for the Skyhawk event-delivery subsystem.

Types:
    Message: Immutable unit of transport (id, type, payload, created_at, retry_count).
    SecurityEvent: Stored security event wrapped by Publisher.publish_event.
    Handler: Abstract base class for message handlers, dispatched by type.
    HandlerRegistry: Type-to-handler map with a logging no-op fallback.
    Publisher: Serializes messages onto durable queues.
    ConsumerLoop: Per-worker receive/dispatch/settle loop with bounded retries.
    Supervisor: Starts and stops fixed-size pools of consumer loops.
    StatsReporter: Read-only queue depth reporting.

Errors:
    BrokerConnectionError, DeclarationError, PublishError, SerializationError,
    ProcessingError, MalformedMessageError; Outcome enumerates delivery results.
"""

from skyhawk.core.config import Settings
from skyhawk.core.consumer import ConsumerLoop, ConsumerStats, consume_message
from skyhawk.core.errors import (
    BrokerConnectionError,
    DeclarationError,
    MalformedMessageError,
    Outcome,
    ProcessingError,
    PublishError,
    SerializationError,
    SkyhawkError,
)
from skyhawk.core.handler import Handler, HandlerRegistry, NoopHandler, SecurityEventHandler
from skyhawk.core.message import (
    Message,
    SecurityEvent,
    dead_letter_queue_name,
    retry_queue_name,
)
from skyhawk.core.pool import PoolHandle, Supervisor
from skyhawk.core.publisher import Publisher
from skyhawk.core.stats import StatsReporter

__all__ = [
    "BrokerConnectionError",
    "ConsumerLoop",
    "ConsumerStats",
    "DeclarationError",
    "Handler",
    "HandlerRegistry",
    "MalformedMessageError",
    "Message",
    "NoopHandler",
    "Outcome",
    "PoolHandle",
    "ProcessingError",
    "PublishError",
    "Publisher",
    "SecurityEvent",
    "SecurityEventHandler",
    "SerializationError",
    "Settings",
    "SkyhawkError",
    "StatsReporter",
    "Supervisor",
    "consume_message",
    "dead_letter_queue_name",
    "retry_queue_name",
]
