"""Error taxonomy and delivery outcomes for Skyhawk."""

from enum import Enum


class SkyhawkError(Exception):
    """Base class for all Skyhawk errors."""


class BrokerConnectionError(SkyhawkError):
    """Raised when the broker cannot be reached after bounded retries.

    Attributes:
        attempts: Number of dial attempts made before giving up.
        last_error: The last exception message from the dial attempt.
    """

    def __init__(self, message: str, attempts: int = 0, last_error: str | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base


class DeclarationError(SkyhawkError):
    """Raised when a queue cannot be declared."""

    def __init__(self, queue_name: str, reason: str):
        self.queue_name = queue_name
        super().__init__(f"failed to declare queue {queue_name!r}: {reason}")


class PublishError(SkyhawkError):
    """Raised when a message cannot be handed to a queue.

    Attributes:
        queue_name: Destination queue.
        message_id: Id of the message that was not published.
        retryable: Whether the caller may retry the publish explicitly.
    """

    retryable = True

    def __init__(self, queue_name: str, message_id: str | None, reason: str):
        self.queue_name = queue_name
        self.message_id = message_id
        super().__init__(f"failed to publish message {message_id} to {queue_name!r}: {reason}")


class SerializationError(PublishError):
    """Raised when a message cannot be encoded. The message is dropped."""

    retryable = False


class ProcessingError(SkyhawkError):
    """Raised by handlers when a message could not be processed."""

    def __init__(self, message: str, message_id: str | None = None):
        self.message_id = message_id
        super().__init__(message)


class MalformedMessageError(SkyhawkError):
    """Raised when a delivery body does not decode into a Message."""


class Outcome(Enum):
    """Terminal state of one delivery as seen by a consumer loop.

    ACKED: handler succeeded, delivery acknowledged
    RETRIED: copy published to the retry queue, original acknowledged
    DEAD_LETTERED: copy published to the dead-letter queue, original acknowledged
    REQUEUED: delivery rejected back onto its source queue
    ABANDONED: loop stopped before finishing; delivery left unacknowledged
    """

    ACKED = "acked"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    REQUEUED = "requeued"
    ABANDONED = "abandoned"
