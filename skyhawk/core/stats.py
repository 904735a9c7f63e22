"""Queue depth reporting for observability endpoints."""

from typing import TYPE_CHECKING, Any

from skyhawk.core.logging import get_logger
from skyhawk.core.message import dead_letter_queue_name, retry_queue_name

if TYPE_CHECKING:
    from skyhawk.backends.base import QueueClient


class StatsReporter:
    """Reads queue depths. Never mutates broker state."""

    def __init__(self, client: "QueueClient") -> None:
        self.client = client
        self._log = get_logger("skyhawk.stats")

    @staticmethod
    def default_queue_names(queue_name: str) -> tuple[str, str, str]:
        """Return a primary queue with its retry and dead-letter satellites."""
        return queue_name, retry_queue_name(queue_name), dead_letter_queue_name(queue_name)

    async def stats(self, *queue_names: str) -> dict[str, dict[str, Any]]:
        """Report the depth of each named queue.

        A failure for one queue is reported inline as ``{"error": ...}`` and
        does not affect the others.

        Returns:
            ``{name: {"length": int, "type": backend_kind}}`` per queue.
        """
        result: dict[str, dict[str, Any]] = {}
        for name in queue_names:
            try:
                length = await self.client.queue_length(name)
            except Exception as e:
                self._log.warning(
                    f"Failed to read length of queue {name}: {e}",
                    extra={"queue": name, "error": str(e)},
                )
                result[name] = {"error": str(e)}
                continue
            result[name] = {"length": length, "type": self.client.kind}
        return result
