"""Pytest configuration, Hypothesis profiles and shared fixtures."""

import pytest
from hypothesis import settings

from skyhawk.backends.memory import MemoryQueueClient

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

QUEUE = "security_events"
RETRY_QUEUE = "security_events_retry"
DEAD_QUEUE = "security_events_dead"


@pytest.fixture
def client() -> MemoryQueueClient:
    """In-memory queue client; queues are created on first declare."""
    return MemoryQueueClient()


@pytest.fixture
async def declared_client(client: MemoryQueueClient) -> MemoryQueueClient:
    """In-memory client with the primary, retry and dead-letter queues declared."""
    for name in (QUEUE, RETRY_QUEUE, DEAD_QUEUE):
        await client.declare(name)
    return client
