"""Queue client protocol and shared connection helpers.

ALL broker I/O lives in backends. Publisher, consumer loops and the stats
reporter only talk to a :class:`QueueClient` value that the caller
constructs and passes in; there is no process-wide queue manager.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

from skyhawk.core.errors import BrokerConnectionError

DEFAULT_CONNECT_ATTEMPTS = 10
DEFAULT_CONNECT_INTERVAL = 2.0

T = TypeVar("T")


class Delivery(Protocol):
    """One message handed to a subscription, pending acknowledgment.

    Attributes:
        body: Raw transport bytes.
        redelivered: True if the broker delivered this message before.
        queue_name: Queue the delivery came from.
    """

    body: bytes
    redelivered: bool
    queue_name: str

    async def ack(self) -> None:
        """Confirm processing; the broker forgets the message."""
        ...

    async def nack(self, requeue: bool = True) -> None:
        """Reject the delivery, optionally putting it back on its queue."""
        ...


class Subscription(Protocol):
    """A prefetch-1 consumer bound to one queue.

    A subscription holds at most one unacknowledged delivery. Closing it
    returns any unacknowledged delivery to the queue.
    """

    queue_name: str

    async def get(self, timeout: float | None = None) -> Delivery | None:
        """Wait for the next delivery.

        Args:
            timeout: Maximum seconds to wait. None waits indefinitely.

        Returns:
            The next Delivery, or None if the timeout expired.
        """
        ...

    async def close(self) -> None: ...


class QueueClient(Protocol):
    """Capability interface over a message broker.

    Implementations must be safe to share between consumer loops running
    concurrently: the publish path is serialized internally, and every
    subscription owns its own consuming resources.
    """

    kind: str

    async def declare(self, name: str, durable: bool = True) -> None:
        """Ensure a queue exists. Idempotent.

        Raises:
            DeclarationError: If the queue cannot be declared, including when
                it already exists with different durability.
        """
        ...

    async def publish(self, body: bytes, queue_name: str) -> None:
        """Hand a persistent message body to a declared queue."""
        ...

    async def subscribe(self, queue_name: str) -> Subscription:
        """Open a prefetch-1 subscription on a declared queue."""
        ...

    async def queue_length(self, queue_name: str) -> int:
        """Return the number of messages ready for delivery. Read-only."""
        ...

    async def close(self) -> None: ...


async def connect_with_retry(
    dial: Callable[[], Awaitable[T]],
    target: str,
    attempts: int = DEFAULT_CONNECT_ATTEMPTS,
    interval: float = DEFAULT_CONNECT_INTERVAL,
    logger: logging.Logger | None = None,
) -> T:
    """Dial a broker a bounded number of times with a fixed interval.

    Args:
        dial: Coroutine factory performing one connection attempt.
        target: Sanitized broker address for log messages.
        attempts: Maximum number of dial attempts.
        interval: Seconds to sleep between attempts.
        logger: Logger for attempt failures.

    Returns:
        Whatever ``dial`` returned on the first successful attempt.

    Raises:
        BrokerConnectionError: After ``attempts`` failed dials.
    """
    log = logger or logging.getLogger("skyhawk.backends")
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await dial()
        except Exception as e:
            last_error = e
            log.warning(
                f"Attempt {attempt}/{attempts}: failed to connect to {target}: {e}",
                extra={"attempt": attempt, "error": str(e)},
            )
            if attempt < attempts:
                await asyncio.sleep(interval)

    raise BrokerConnectionError(
        f"failed to connect to {target} after {attempts} attempts",
        attempts=attempts,
        last_error=str(last_error) if last_error else None,
    ) from last_error
