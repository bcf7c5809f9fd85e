"""Global pytest configuration and fixtures.

Unit tests run against ``InMemoryStore`` instances sharing a ``FakeClock``,
so lease expiry and watchdog cycles happen only when a test advances time.
"""

from __future__ import annotations

import random

import pytest

from leasehold.clock import FakeClock
from leasehold.config import LockConfig
from leasehold.lock import Lock
from leasehold.stores.memory import InMemoryStore


def pytest_collection_modifyitems(items):
    """Mark everything under tests/integration as integration tests."""
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock starting at t=0."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    """In-memory store expiring records on the fake clock."""
    return InMemoryStore(clock=clock)


@pytest.fixture
def config() -> LockConfig:
    """Single-attempt config with a 10s lease."""
    return LockConfig(
        ttl=10.0,
        wait_timeout=0,
        retry_interval=0.05,
        retry_max_interval=0.5,
        per_store_timeout=0.1,
    )


@pytest.fixture
def lock(store: InMemoryStore, config: LockConfig, clock: FakeClock) -> Lock:
    """Lock over the shared in-memory store."""
    return Lock(store, config=config, clock=clock, rng=random.Random(7))


@pytest.fixture
def other_lock(store: InMemoryStore, config: LockConfig, clock: FakeClock) -> Lock:
    """A second client of the same store, standing in for another process."""
    return Lock(store, config=config, clock=clock, rng=random.Random(11))
