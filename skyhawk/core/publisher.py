"""Publisher: serializes messages and hands them to named queues."""

from typing import TYPE_CHECKING

from skyhawk.core.errors import DeclarationError, PublishError, SerializationError
from skyhawk.core.logging import get_logger
from skyhawk.core.message import Message, SecurityEvent

if TYPE_CHECKING:
    from skyhawk.backends.base import QueueClient


class Publisher:
    """Publishes messages onto durable queues.

    Delivery is at-least-once: a publish that fails on network ambiguity may
    still have reached the broker, so consumers must tolerate duplicate ids.
    A failed publish is never retried here; the caller decides.
    """

    def __init__(self, client: "QueueClient") -> None:
        self.client = client
        self._log = get_logger("skyhawk.publisher")

    async def publish(self, message: Message, queue_name: str) -> None:
        """Publish one persistent copy of ``message`` onto ``queue_name``.

        Raises:
            SerializationError: If the message cannot be encoded. The message
                is dropped and must not be retried as-is.
            PublishError: If the queue cannot be declared or the broker
                rejects the write. The caller may retry.
        """
        try:
            body = message.to_bytes()
        except (TypeError, ValueError) as e:
            self._log.error(
                f"Failed to serialize message {message.id}: {e}",
                extra={"message_id": message.id, "message_type": message.type, "queue": queue_name},
            )
            raise SerializationError(queue_name, message.id, str(e)) from e

        try:
            await self.client.declare(queue_name, durable=True)
            await self.client.publish(body, queue_name)
        except PublishError:
            raise
        except DeclarationError as e:
            raise PublishError(queue_name, message.id, str(e)) from e
        except Exception as e:
            self._log.error(
                f"Failed to publish message {message.id} to {queue_name}: {e}",
                extra={"message_id": message.id, "message_type": message.type, "queue": queue_name},
            )
            raise PublishError(queue_name, message.id, str(e)) from e

        self._log.info(
            f"Published message {message.id} to queue {queue_name}",
            extra={
                "message_id": message.id,
                "message_type": message.type,
                "queue": queue_name,
                "retry_count": message.retry_count,
            },
        )

    async def publish_event(self, event: SecurityEvent, queue_name: str) -> Message:
        """Wrap a stored security event in a Message and publish it.

        Returns:
            The published Message.
        """
        message = Message.from_security_event(event)
        await self.publish(message, queue_name)
        return message

    async def publish_best_effort(self, message: Message, queue_name: str) -> bool:
        """Publish, logging instead of raising on failure.

        For callers that already stored the event durably elsewhere and must
        not fail their own request because the queue is unavailable.

        Returns:
            True if the message was published.
        """
        try:
            await self.publish(message, queue_name)
        except PublishError as e:
            self._log.warning(
                f"Failed to publish event to queue: {e}",
                extra={"message_id": message.id, "queue": queue_name, "retryable": e.retryable},
            )
            return False
        return True
