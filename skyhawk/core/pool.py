"""Worker pool supervisor.

A pool is a fixed set of :class:`ConsumerLoop` tasks bound to one primary
queue, sharing one stop signal:

- ``worker_count`` loops consume ``Q``
- ``retry_workers`` loops consume ``Q_retry`` (failures from both go to
  ``Q_retry``/``Q_dead`` of the same primary)

Shutdown is cooperative. ``stop()`` sets the shared signal, waits up to the
grace period for loops to finish their current delivery, then cancels the
rest; a cancelled loop abandons its delivery unacknowledged, so the broker
redelivers it to another consumer.
"""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from skyhawk.core.consumer import (
    DEFAULT_HANDLER_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL,
    ConsumerLoop,
    ConsumerStats,
)
from skyhawk.core.handler import HandlerRegistry
from skyhawk.core.logging import get_logger
from skyhawk.core.message import retry_queue_name

if TYPE_CHECKING:
    from skyhawk.backends.base import QueueClient

DEFAULT_SHUTDOWN_GRACE = 10.0


@dataclass
class PoolHandle:
    """A running pool, returned by :meth:`Supervisor.start`."""

    queue_name: str
    stop_event: asyncio.Event
    loops: list[ConsumerLoop] = field(default_factory=list)
    tasks: list["asyncio.Task[ConsumerStats]"] = field(default_factory=list)
    stopped: bool = False

    @property
    def worker_count(self) -> int:
        return len(self.loops)

    def stats(self) -> ConsumerStats:
        """Aggregate counters of every loop in the pool."""
        total = ConsumerStats()
        for loop in self.loops:
            total = total.merge(loop.get_stats())
        return total

    async def wait(self) -> None:
        """Block until every loop task has finished."""
        await asyncio.gather(*self.tasks, return_exceptions=True)


class Supervisor:
    """Starts and stops pools of consumer loops over one queue client."""

    def __init__(
        self,
        client: "QueueClient",
        registry: HandlerRegistry | None = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        requeue_malformed_once: bool = True,
    ) -> None:
        self.client = client
        self.registry = registry or HandlerRegistry()
        self.max_retries = max_retries
        self.handler_timeout = handler_timeout
        self.poll_interval = poll_interval
        self.shutdown_grace = shutdown_grace
        self.requeue_malformed_once = requeue_malformed_once
        self._log = get_logger("skyhawk.pool")

    def _loop(
        self, queue_name: str, source_queue: str, worker_id: str, stop_event: asyncio.Event
    ) -> ConsumerLoop:
        return ConsumerLoop(
            self.client,
            queue_name,
            self.registry,
            source_queue=source_queue,
            worker_id=worker_id,
            max_retries=self.max_retries,
            handler_timeout=self.handler_timeout,
            poll_interval=self.poll_interval,
            stop_event=stop_event,
            requeue_malformed_once=self.requeue_malformed_once,
        )

    async def start(self, queue_name: str, worker_count: int, retry_workers: int = 1) -> PoolHandle:
        """Spawn the pool's consumer loops.

        Queues are declared before any task starts, so a declaration failure
        surfaces here instead of inside a background task.

        Args:
            queue_name: Primary queue ``Q``.
            worker_count: Loops consuming ``Q``. Fixed for the pool's lifetime.
            retry_workers: Loops consuming ``Q_retry``.

        Raises:
            ValueError: If ``worker_count`` < 1 or ``retry_workers`` < 0.
            DeclarationError: If the queues cannot be declared.
        """
        if worker_count < 1:
            raise ValueError(f"worker_count must be >= 1, got {worker_count}")
        if retry_workers < 0:
            raise ValueError(f"retry_workers must be >= 0, got {retry_workers}")

        retry_queue = retry_queue_name(queue_name)
        for loop_queue in (queue_name, retry_queue):
            await self.client.declare(loop_queue, durable=True)

        handle = PoolHandle(queue_name=queue_name, stop_event=asyncio.Event())
        for i in range(1, worker_count + 1):
            handle.loops.append(self._loop(queue_name, queue_name, str(i), handle.stop_event))
        for i in range(1, retry_workers + 1):
            handle.loops.append(self._loop(queue_name, retry_queue, f"retry-{i}", handle.stop_event))

        for loop in handle.loops:
            task = asyncio.create_task(loop.run(), name=f"skyhawk-worker-{loop.worker_id}")
            task.add_done_callback(self._on_worker_done)
            handle.tasks.append(task)

        self._log.info(
            f"Started {worker_count} workers and {retry_workers} retry workers for queue {queue_name}",
            extra={"queue": queue_name, "workers": worker_count, "retry_workers": retry_workers},
        )
        return handle

    def _on_worker_done(self, task: "asyncio.Task[ConsumerStats]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log.error(
                f"Worker task {task.get_name()} exited with error: {error}",
                extra={"error": str(error)},
            )

    async def stop(self, handle: PoolHandle) -> ConsumerStats:
        """Signal every loop to stop and wait for them.

        Loops get ``shutdown_grace`` seconds to finish their in-flight
        delivery; remaining tasks are cancelled and awaited before this
        returns.

        Returns:
            Aggregated counters of the pool.
        """
        if handle.stopped:
            return handle.stats()
        handle.stop_event.set()
        self._log.info(f"Shutting down workers for queue {handle.queue_name}...", extra={"queue": handle.queue_name})

        pending: set[asyncio.Task[ConsumerStats]] = set(handle.tasks)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=self.shutdown_grace)
        if pending:
            self._log.warning(
                f"{len(pending)} workers did not finish within {self.shutdown_grace}s; cancelling",
                extra={"queue": handle.queue_name, "pending": len(pending)},
            )
            for task in pending:
                task.cancel()
        await handle.wait()

        handle.stopped = True
        self._log.info(f"Workers for queue {handle.queue_name} stopped", extra={"queue": handle.queue_name})
        return handle.stats()
