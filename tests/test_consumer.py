"""Tests for ConsumerLoop: ack / retry / dead-letter state machine.

Covers:
- retry_count after k failures equals k
- Exhausted messages land in the dead-letter queue exactly once
- Messages that eventually succeed leave every queue empty
- Malformed bodies are bounded: requeued once, then dead-lettered
- Republish failures never lose the original delivery
"""

import asyncio
import logging
import threading

import pytest

from skyhawk.backends.memory import MemoryQueueClient
from skyhawk.core.consumer import ConsumerLoop, consume_message
from skyhawk.core.errors import MalformedMessageError, Outcome, ProcessingError
from skyhawk.core.handler import Handler, HandlerRegistry
from skyhawk.core.message import Message
from skyhawk.core.publisher import Publisher
from tests.conftest import DEAD_QUEUE, QUEUE, RETRY_QUEUE


class FlakyHandler(Handler):
    """Fails the first ``failures`` attempts, then succeeds."""

    handles = ["login"]

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.seen_retry_counts: list[int] = []

    def handle(self, message: Message) -> None:
        self.seen_retry_counts.append(message.retry_count)
        if len(self.seen_retry_counts) <= self.failures:
            raise ProcessingError("simulated failure", message_id=message.id)


class AlwaysFailingHandler(FlakyHandler):
    def __init__(self) -> None:
        super().__init__(failures=10_000)


class SlowAsyncHandler(Handler):
    handles = ["slow"]

    async def handle(self, message: Message) -> None:
        await asyncio.sleep(5)


class BlockingSyncHandler(Handler):
    """Blocks its thread until released."""

    handles = ["blocking"]

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def handle(self, message: Message) -> None:
        self.release.wait(timeout=5)


class BlockingAsyncHandler(Handler):
    """Signals when it starts, then waits until released."""

    handles = ["login"]

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def handle(self, message: Message) -> None:
        self.calls += 1
        self.started.set()
        await self.release.wait()


class RetryPublishFailsClient(MemoryQueueClient):
    """Broker that refuses writes to retry and dead-letter queues."""

    async def publish(self, body: bytes, queue_name: str) -> None:
        if queue_name.endswith(("_retry", "_dead")):
            raise ConnectionResetError("broker went away")
        await super().publish(body, queue_name)


class LogCapture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


async def pump(client: MemoryQueueClient, registry: HandlerRegistry, max_retries: int = 3) -> list[Outcome]:
    """Drive a primary and a retry loop by hand until both queues are idle."""
    primary = ConsumerLoop(client, QUEUE, registry, max_retries=max_retries)
    retry = ConsumerLoop(client, QUEUE, registry, source_queue=RETRY_QUEUE, max_retries=max_retries)
    subscriptions = [
        (primary, await client.subscribe(QUEUE)),
        (retry, await client.subscribe(RETRY_QUEUE)),
    ]
    outcomes: list[Outcome] = []
    progressed = True
    while progressed:
        progressed = False
        for loop, subscription in subscriptions:
            delivery = await subscription.get(timeout=0.01)
            if delivery is not None:
                outcomes.append(await loop.process(delivery))
                progressed = True
    for _, subscription in subscriptions:
        await subscription.close()
    return outcomes


async def queue_depths(client: MemoryQueueClient) -> tuple[int, int, int]:
    return (
        await client.queue_length(QUEUE),
        await client.queue_length(RETRY_QUEUE),
        await client.queue_length(DEAD_QUEUE),
    )


def test_max_retries_must_be_positive(client: MemoryQueueClient):
    with pytest.raises(ValueError):
        ConsumerLoop(client, QUEUE, max_retries=0)


# =============================================================================
# Scenarios
# =============================================================================


async def test_scenario_success_on_first_delivery(declared_client: MemoryQueueClient):
    """Scenario A: a login event handled on first delivery leaves no trace."""
    handler = FlakyHandler(failures=0)
    await Publisher(declared_client).publish(Message(type="login", payload={"ip": "10.0.0.1"}), QUEUE)

    outcomes = await pump(declared_client, HandlerRegistry([handler]))

    assert outcomes == [Outcome.ACKED]
    assert await queue_depths(declared_client) == (0, 0, 0)


async def test_scenario_success_via_retry_queue(declared_client: MemoryQueueClient):
    """Scenario B: fails twice, succeeds on the third attempt from the retry queue."""
    handler = FlakyHandler(failures=2)
    await Publisher(declared_client).publish(Message(type="login"), QUEUE)

    outcomes = await pump(declared_client, HandlerRegistry([handler]))

    assert outcomes == [Outcome.RETRIED, Outcome.RETRIED, Outcome.ACKED]
    assert handler.seen_retry_counts == [0, 1, 2]
    assert await queue_depths(declared_client) == (0, 0, 0)


async def test_scenario_exhausted_retries_dead_letter(declared_client: MemoryQueueClient):
    """Scenario C: always failing lands in Q_dead with retry_count == max_retries."""
    handler = AlwaysFailingHandler()
    original = Message(type="login", payload={"ip": "10.0.0.1"})
    await Publisher(declared_client).publish(original, QUEUE)

    outcomes = await pump(declared_client, HandlerRegistry([handler]))

    assert outcomes == [Outcome.RETRIED, Outcome.RETRIED, Outcome.DEAD_LETTERED]
    assert len(handler.seen_retry_counts) == 3
    assert await queue_depths(declared_client) == (0, 0, 1)

    dead = Message.from_bytes(declared_client.peek(DEAD_QUEUE)[0])
    assert dead.id == original.id
    assert dead.retry_count == 3
    assert dead.payload == original.payload


@pytest.mark.parametrize("succeed_on", [1, 2, 3])
async def test_success_within_budget_is_never_dead_lettered(
    declared_client: MemoryQueueClient, succeed_on: int
):
    handler = FlakyHandler(failures=succeed_on - 1)
    await Publisher(declared_client).publish(Message(type="login"), QUEUE)

    outcomes = await pump(declared_client, HandlerRegistry([handler]))

    assert Outcome.DEAD_LETTERED not in outcomes
    assert outcomes[-1] is Outcome.ACKED
    assert len(handler.seen_retry_counts) == succeed_on
    assert await queue_depths(declared_client) == (0, 0, 0)


@pytest.mark.parametrize("max_retries", [1, 2, 5])
async def test_retry_count_tracks_failures(declared_client: MemoryQueueClient, max_retries: int):
    handler = AlwaysFailingHandler()
    await Publisher(declared_client).publish(Message(type="login"), QUEUE)

    await pump(declared_client, HandlerRegistry([handler]), max_retries=max_retries)

    # Each attempt observed exactly the number of earlier failures
    assert handler.seen_retry_counts == list(range(max_retries))
    dead = Message.from_bytes(declared_client.peek(DEAD_QUEUE)[0])
    assert dead.retry_count == max_retries


# =============================================================================
# Dispatch
# =============================================================================


async def test_unknown_type_is_acked_by_default_handler(declared_client: MemoryQueueClient):
    capture = LogCapture()
    logger = logging.getLogger("skyhawk.handler")
    logger.addHandler(capture)
    try:
        await Publisher(declared_client).publish(Message(type="mystery"), QUEUE)
        outcomes = await pump(declared_client, HandlerRegistry([FlakyHandler(failures=0)]))
    finally:
        logger.removeHandler(capture)

    assert outcomes == [Outcome.ACKED]
    assert any("mystery" in record.getMessage() for record in capture.records)


async def test_async_handler_timeout_counts_as_failure(declared_client: MemoryQueueClient):
    loop = ConsumerLoop(declared_client, QUEUE, HandlerRegistry([SlowAsyncHandler()]), handler_timeout=0.05)
    await Publisher(declared_client).publish(Message(type="slow"), QUEUE)
    subscription = await declared_client.subscribe(QUEUE)

    outcome = await loop.process(await subscription.get(timeout=0.1))

    assert outcome is Outcome.RETRIED
    assert loop.get_stats().handler_errors["SlowAsyncHandler"] == 1
    retried = Message.from_bytes(declared_client.peek(RETRY_QUEUE)[0])
    assert retried.retry_count == 1


@pytest.mark.timeout(5)
async def test_blocking_sync_handler_times_out(declared_client: MemoryQueueClient):
    handler = BlockingSyncHandler()
    loop = ConsumerLoop(declared_client, QUEUE, HandlerRegistry([handler]), handler_timeout=0.05)
    await Publisher(declared_client).publish(Message(type="blocking"), QUEUE)
    subscription = await declared_client.subscribe(QUEUE)

    try:
        outcome = await loop.process(await subscription.get(timeout=0.1))
    finally:
        handler.release.set()

    assert outcome is Outcome.RETRIED
    assert loop.get_stats().handler_errors["BlockingSyncHandler"] == 1


# =============================================================================
# Failure containment
# =============================================================================


async def test_republish_failure_requeues_original():
    client = RetryPublishFailsClient()
    for name in (QUEUE, RETRY_QUEUE, DEAD_QUEUE):
        await client.declare(name)
    original = Message(type="login")
    await client.publish(original.to_bytes(), QUEUE)
    loop = ConsumerLoop(client, QUEUE, HandlerRegistry([AlwaysFailingHandler()]))
    subscription = await client.subscribe(QUEUE)

    outcome = await loop.process(await subscription.get(timeout=0.1))

    assert outcome is Outcome.REQUEUED
    redelivered = await subscription.get(timeout=0.1)
    assert redelivered is not None
    assert redelivered.redelivered is True
    assert Message.from_bytes(redelivered.body).retry_count == 0


async def test_malformed_body_requeued_once_then_dead_lettered(declared_client: MemoryQueueClient):
    await declared_client.publish(b"{not json", QUEUE)
    loop = ConsumerLoop(declared_client, QUEUE)
    subscription = await declared_client.subscribe(QUEUE)

    first = await loop.process(await subscription.get(timeout=0.1))
    second = await loop.process(await subscription.get(timeout=0.1))

    assert first is Outcome.REQUEUED
    assert second is Outcome.DEAD_LETTERED
    assert await declared_client.queue_length(QUEUE) == 0
    assert declared_client.peek(DEAD_QUEUE) == [b"{not json"]
    assert loop.get_stats().malformed == 2


async def test_malformed_body_dead_lettered_immediately_when_configured(
    declared_client: MemoryQueueClient,
):
    await declared_client.publish(b"garbage", QUEUE)
    loop = ConsumerLoop(declared_client, QUEUE, requeue_malformed_once=False)
    subscription = await declared_client.subscribe(QUEUE)

    outcome = await loop.process(await subscription.get(timeout=0.1))

    assert outcome is Outcome.DEAD_LETTERED
    assert declared_client.peek(DEAD_QUEUE) == [b"garbage"]


# =============================================================================
# run() and cancellation
# =============================================================================


@pytest.mark.timeout(5)
async def test_run_processes_until_stopped(declared_client: MemoryQueueClient):
    handler = FlakyHandler(failures=0)
    loop = ConsumerLoop(declared_client, QUEUE, HandlerRegistry([handler]), poll_interval=0.01)
    publisher = Publisher(declared_client)
    for _ in range(3):
        await publisher.publish(Message(type="login"), QUEUE)

    task = asyncio.create_task(loop.run())
    while loop.get_stats().acked < 3:
        await asyncio.sleep(0.01)
    loop.stop()
    stats = await asyncio.wait_for(task, timeout=1)

    assert stats.acked == 3
    assert stats.received == 3
    assert await declared_client.queue_length(QUEUE) == 0


@pytest.mark.timeout(5)
async def test_stop_observed_while_waiting(declared_client: MemoryQueueClient):
    stop = asyncio.Event()
    loop = ConsumerLoop(declared_client, QUEUE, poll_interval=0.01, stop_event=stop)

    task = asyncio.create_task(loop.run())
    await asyncio.sleep(0.05)
    stop.set()

    stats = await asyncio.wait_for(task, timeout=1)
    assert stats.received == 0


@pytest.mark.timeout(5)
async def test_cancel_mid_delivery_leaves_message_redeliverable(declared_client: MemoryQueueClient):
    handler = BlockingAsyncHandler()
    loop = ConsumerLoop(declared_client, QUEUE, HandlerRegistry([handler]), poll_interval=0.01)
    await Publisher(declared_client).publish(Message(type="login"), QUEUE)

    task = asyncio.create_task(loop.run())
    await asyncio.wait_for(handler.started.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert loop.get_stats().abandoned == 1
    assert loop.get_stats().acked == 0
    assert await declared_client.queue_length(QUEUE) == 1
    subscription = await declared_client.subscribe(QUEUE)
    delivery = await subscription.get(timeout=0.1)
    assert delivery.redelivered is True


# =============================================================================
# Single-shot consume
# =============================================================================


async def test_consume_message_round_trips(client: MemoryQueueClient):
    original = Message(type="login", payload={"ip": "10.0.0.1", "ok": True})
    await Publisher(client).publish(original, QUEUE)

    consumed = await consume_message(client, QUEUE, timeout=0.1)

    assert consumed is not None
    assert consumed.id == original.id
    assert consumed.type == original.type
    assert consumed.payload == original.payload
    assert await client.queue_length(QUEUE) == 0


async def test_consume_message_times_out(client: MemoryQueueClient):
    assert await consume_message(client, QUEUE, timeout=0.02) is None


async def test_consume_message_malformed_is_requeued(client: MemoryQueueClient):
    await client.declare(QUEUE)
    await client.publish(b"nope", QUEUE)

    with pytest.raises(MalformedMessageError):
        await consume_message(client, QUEUE, timeout=0.1)

    assert await client.queue_length(QUEUE) == 1


async def test_consume_message_dead_letters_redelivered_malformed(client: MemoryQueueClient):
    await client.declare(QUEUE)
    await client.publish(b"nope", QUEUE)

    for _ in range(2):
        with pytest.raises(MalformedMessageError):
            await consume_message(client, QUEUE, timeout=0.1)

    assert await client.queue_length(QUEUE) == 0
    assert client.peek(DEAD_QUEUE) == [b"nope"]


async def test_consume_message_drains_past_malformed(client: MemoryQueueClient):
    await client.declare(QUEUE)
    await client.publish(b"nope", QUEUE)
    good = Message(type="login")
    await client.publish(good.to_bytes(), QUEUE)

    consumed = []
    errors = 0
    for _ in range(5):
        try:
            message = await consume_message(client, QUEUE, timeout=0.05)
        except MalformedMessageError:
            errors += 1
            continue
        if message is not None:
            consumed.append(message.id)

    assert consumed == [good.id]
    assert errors == 2
    assert await client.queue_length(QUEUE) == 0
