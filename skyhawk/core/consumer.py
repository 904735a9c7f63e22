"""Consumer loop: per-worker delivery processing with bounded retries.

State machine per delivery:

    Delivered --handler success-------------------------> Acked
    Delivered --handler failure, retries left-----------> published to Q_retry, original acked
    Delivered --handler failure, retries exhausted------> published to Q_dead, original acked

The retry copy carries ``retry_count + 1`` and is the new outstanding work
item; the original is acked so it never loops on the primary queue. If the
copy cannot be published, the original is rejected back onto its queue
instead of being acked, so no message is lost.

IMPORTANT: failures inside the loop never propagate to the publisher. They
are logged, counted in :class:`ConsumerStats`, and settled on the broker.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from skyhawk.core.errors import MalformedMessageError, Outcome, ProcessingError, PublishError
from skyhawk.core.handler import Handler, HandlerRegistry
from skyhawk.core.logging import get_logger
from skyhawk.core.message import Message, dead_letter_queue_name, retry_queue_name
from skyhawk.core.publisher import Publisher

if TYPE_CHECKING:
    from skyhawk.backends.base import Delivery, QueueClient

DEFAULT_MAX_RETRIES = 3
DEFAULT_HANDLER_TIMEOUT = 30.0
# How long one receive waits before the loop re-checks its stop signal
DEFAULT_POLL_INTERVAL = 1.0


@dataclass
class ConsumerStats:
    """Counters from one or more consumer loops."""

    received: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    requeued: int = 0
    malformed: int = 0
    abandoned: int = 0
    ack_errors: int = 0
    handler_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def copy(self) -> "ConsumerStats":
        return ConsumerStats(
            received=self.received,
            acked=self.acked,
            retried=self.retried,
            dead_lettered=self.dead_lettered,
            requeued=self.requeued,
            malformed=self.malformed,
            abandoned=self.abandoned,
            ack_errors=self.ack_errors,
            handler_errors=defaultdict(int, self.handler_errors),
        )

    def merge(self, other: "ConsumerStats") -> "ConsumerStats":
        """Return the sum of two sets of counters."""
        merged = self.copy()
        merged.received += other.received
        merged.acked += other.acked
        merged.retried += other.retried
        merged.dead_lettered += other.dead_lettered
        merged.requeued += other.requeued
        merged.malformed += other.malformed
        merged.abandoned += other.abandoned
        merged.ack_errors += other.ack_errors
        for name, count in other.handler_errors.items():
            merged.handler_errors[name] += count
        return merged


class ConsumerLoop:
    """Pulls one delivery at a time from a queue and settles it.

    Args:
        client: Shared queue client.
        queue_name: Primary queue ``Q``; failures go to ``Q_retry``/``Q_dead``.
        registry: Handlers by message type. Defaults to an empty registry,
            so every message is acked by the no-op default handler.
        source_queue: Queue to consume from. Defaults to ``queue_name``; the
            retry workers of a pool consume ``Q_retry`` with the same primary.
        worker_id: Identifier used in logs.
        max_retries: Failed attempts after which a message is dead-lettered.
        handler_timeout: Seconds a handler call, sync or async, may run before
            it counts as a failure.
        poll_interval: Seconds each receive waits before re-checking the stop
            signal.
        stop_event: Shared cancellation signal. A private one is created if
            omitted.
        requeue_malformed_once: If True, an undecodable body is rejected back
            onto its queue on first sight and dead-lettered verbatim when it
            comes back. If False it is dead-lettered immediately.
    """

    def __init__(
        self,
        client: "QueueClient",
        queue_name: str,
        registry: HandlerRegistry | None = None,
        *,
        source_queue: str | None = None,
        worker_id: int | str = 1,
        max_retries: int = DEFAULT_MAX_RETRIES,
        handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stop_event: asyncio.Event | None = None,
        requeue_malformed_once: bool = True,
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        self.client = client
        self.queue_name = queue_name
        self.source_queue = source_queue or queue_name
        self.retry_queue = retry_queue_name(queue_name)
        self.dead_letter_queue = dead_letter_queue_name(queue_name)
        self.registry = registry or HandlerRegistry()
        self.worker_id = worker_id
        self.max_retries = max_retries
        self.handler_timeout = handler_timeout
        self.poll_interval = poll_interval
        self.requeue_malformed_once = requeue_malformed_once
        self._stop = stop_event or asyncio.Event()
        self._publisher = Publisher(client)
        self._stats = ConsumerStats()
        self._in_flight: "Delivery | None" = None
        self._log = get_logger("skyhawk.consumer")

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def get_stats(self) -> ConsumerStats:
        """Return a snapshot of the loop's counters."""
        return self._stats.copy()

    def _extra(self, message: Message | None = None, **fields: object) -> dict[str, object]:
        extra: dict[str, object] = {"queue": self.source_queue, "worker": self.worker_id}
        if message is not None:
            extra.update(
                message_id=message.id,
                message_type=message.type,
                retry_count=message.retry_count,
            )
        extra.update(fields)
        return extra

    async def run(self) -> ConsumerStats:
        """Consume until the stop signal is set.

        The stop signal is observed between deliveries and while waiting for
        one. A delivery already received is finished before returning. If the
        task is cancelled mid-delivery, the delivery is left unacknowledged
        and returned to the queue when the subscription closes.

        Raises:
            DeclarationError: If the queues cannot be declared.
        """
        for name in (self.source_queue, self.retry_queue, self.dead_letter_queue):
            await self.client.declare(name, durable=True)

        subscription = await self.client.subscribe(self.source_queue)
        self._log.info(
            f"Consumer worker {self.worker_id} started on queue {self.source_queue}",
            extra=self._extra(),
        )
        try:
            while not self._stop.is_set():
                delivery = await subscription.get(timeout=self.poll_interval)
                if delivery is None:
                    continue
                self._in_flight = delivery
                await self.process(delivery)
                self._in_flight = None
        except asyncio.CancelledError:
            if self._in_flight is not None:
                self._stats.abandoned += 1
                self._log.warning(
                    f"Consumer worker {self.worker_id} cancelled mid-delivery; "
                    "leaving it unacknowledged for redelivery",
                    extra=self._extra(outcome=Outcome.ABANDONED.value),
                )
            raise
        finally:
            self._in_flight = None
            await subscription.close()
            self._log.info(
                f"Consumer worker {self.worker_id} stopping",
                extra=self._extra(),
            )
        return self.get_stats()

    async def process(self, delivery: "Delivery") -> Outcome:
        """Decode, dispatch and settle one delivery."""
        self._stats.received += 1
        try:
            message = Message.from_bytes(delivery.body)
        except MalformedMessageError as e:
            return await self._handle_malformed(delivery, e)

        handler = self.registry.resolve(message.type)
        try:
            await self._invoke_handler(handler, message)
        except Exception as e:
            return await self._handle_failure(delivery, message, handler, e)

        if await self._settle(delivery, message, requeue=None):
            self._stats.acked += 1
        self._log.info(
            f"Processed message {message.id}",
            extra=self._extra(message, handler=handler.name, outcome=Outcome.ACKED.value),
        )
        return Outcome.ACKED

    async def _invoke_handler(self, handler: Handler, message: Message) -> None:
        # Sync handlers run in a worker thread; one that times out is left to
        # finish on its own.
        if inspect.iscoroutinefunction(handler.handle):
            call = handler.handle(message)
        else:
            call = asyncio.to_thread(handler.handle, message)
        try:
            result = await asyncio.wait_for(call, timeout=self.handler_timeout)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.handler_timeout)
        except TimeoutError:
            raise ProcessingError(
                f"Handler {handler.name} timed out after {self.handler_timeout}s",
                message_id=message.id,
            ) from None

    async def _settle(self, delivery: "Delivery", message: Message | None, requeue: bool | None) -> bool:
        """Ack (``requeue is None``) or nack a delivery; log instead of raising."""
        try:
            if requeue is None:
                await delivery.ack()
            else:
                await delivery.nack(requeue=requeue)
        except Exception as e:
            self._stats.ack_errors += 1
            self._log.error(
                f"Failed to settle delivery: {e}",
                extra=self._extra(message, error=str(e)),
            )
            return False
        return True

    async def _handle_failure(
        self, delivery: "Delivery", message: Message, handler: Handler, error: Exception
    ) -> Outcome:
        self._stats.handler_errors[handler.name] += 1
        failed = message.with_retry()

        if failed.retry_count < self.max_retries:
            target, outcome = self.retry_queue, Outcome.RETRIED
            self._log.warning(
                f"Error processing message {message.id}: {error}; "
                f"requeuing (retry {failed.retry_count}/{self.max_retries})",
                extra=self._extra(failed, handler=handler.name, error=str(error), outcome=outcome.value),
            )
        else:
            target, outcome = self.dead_letter_queue, Outcome.DEAD_LETTERED
            self._log.error(
                f"Message {message.id} exceeded max retries ({self.max_retries}), "
                "moving to dead letter queue",
                extra=self._extra(failed, handler=handler.name, error=str(error), outcome=outcome.value),
            )

        try:
            await self._publisher.publish(failed, target)
        except PublishError as e:
            self._log.error(
                f"Failed to move message {message.id} to {target}: {e}; rejecting original",
                extra=self._extra(message, error=str(e), outcome=Outcome.REQUEUED.value),
            )
            await self._settle(delivery, message, requeue=True)
            self._stats.requeued += 1
            return Outcome.REQUEUED

        await self._settle(delivery, message, requeue=None)
        if outcome is Outcome.RETRIED:
            self._stats.retried += 1
        else:
            self._stats.dead_lettered += 1
        return outcome

    async def _handle_malformed(self, delivery: "Delivery", error: MalformedMessageError) -> Outcome:
        self._stats.malformed += 1

        if self.requeue_malformed_once and not delivery.redelivered:
            self._log.warning(
                f"Failed to decode message, rejecting for one redelivery: {error}",
                extra=self._extra(error=str(error), outcome=Outcome.REQUEUED.value),
            )
            await self._settle(delivery, None, requeue=True)
            self._stats.requeued += 1
            return Outcome.REQUEUED

        # The body is moved verbatim; it cannot be re-encoded with a retry count
        try:
            await self.client.declare(self.dead_letter_queue, durable=True)
            await self.client.publish(delivery.body, self.dead_letter_queue)
        except Exception as e:
            self._log.error(
                f"Failed to dead-letter undecodable message: {e}; rejecting original",
                extra=self._extra(error=str(e), outcome=Outcome.REQUEUED.value),
            )
            await self._settle(delivery, None, requeue=True)
            self._stats.requeued += 1
            return Outcome.REQUEUED

        self._log.error(
            f"Undecodable message moved to dead letter queue: {error}",
            extra=self._extra(error=str(error), outcome=Outcome.DEAD_LETTERED.value),
        )
        await self._settle(delivery, None, requeue=None)
        self._stats.dead_lettered += 1
        return Outcome.DEAD_LETTERED


async def consume_message(client: "QueueClient", queue_name: str, timeout: float) -> Message | None:
    """Take a single message off a queue, for draining and inspection.

    The message is acknowledged as soon as it decodes; no handler runs.

    Returns:
        The next Message, or None if none arrived within ``timeout`` seconds.

    Raises:
        MalformedMessageError: If the body does not decode. On first sight
            the delivery is rejected back onto the queue; when it comes back
            redelivered it is moved verbatim to the dead-letter queue, so a
            draining caller is never stuck behind it.
    """
    await client.declare(queue_name, durable=True)
    subscription = await client.subscribe(queue_name)
    try:
        delivery = await subscription.get(timeout=timeout)
        if delivery is None:
            return None
        try:
            message = Message.from_bytes(delivery.body)
        except MalformedMessageError:
            if delivery.redelivered:
                await _dead_letter_raw(client, delivery, queue_name)
            else:
                await delivery.nack(requeue=True)
            raise
        await delivery.ack()
        get_logger("skyhawk.consumer").info(
            f"Consumed message {message.id} from queue {queue_name}",
            extra={"message_id": message.id, "message_type": message.type, "queue": queue_name},
        )
        return message
    finally:
        await subscription.close()


async def _dead_letter_raw(client: "QueueClient", delivery: "Delivery", queue_name: str) -> None:
    dead_letter_queue = dead_letter_queue_name(queue_name)
    log = get_logger("skyhawk.consumer")
    try:
        await client.declare(dead_letter_queue, durable=True)
        await client.publish(delivery.body, dead_letter_queue)
    except Exception as e:
        log.error(
            f"Failed to dead-letter undecodable message: {e}; rejecting original",
            extra={"queue": queue_name, "error": str(e), "outcome": Outcome.REQUEUED.value},
        )
        await delivery.nack(requeue=True)
        return
    await delivery.ack()
    log.error(
        f"Undecodable message moved to dead letter queue {dead_letter_queue}",
        extra={"queue": queue_name, "outcome": Outcome.DEAD_LETTERED.value},
    )
