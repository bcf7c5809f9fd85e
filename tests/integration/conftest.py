"""Integration test fixtures using Docker.

Provides a containerized Redis for exercising the lock against a real store.
Three logical databases of the same server stand in for quorum stores.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import redis.asyncio as redis

from leasehold.stores.redis import RedisStore
from tests.integration.docker_utils import RedisService, get_docker_client, run_redis

QUORUM_DATABASES = (0, 1, 2)


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_container(docker_client) -> Iterator[RedisService]:
    """Start Redis container for the test session."""
    with run_redis(docker_client) as container:
        yield container


@pytest.fixture(scope="session")
def redis_url(redis_container: RedisService) -> str:
    """Get the Redis URL for the test container."""
    return redis_container.url(0)


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[redis.Redis]:
    """Create a Redis client for tests."""
    client = redis.from_url(redis_url)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest_asyncio.fixture
async def redis_store(redis_client: redis.Redis) -> RedisStore:
    """Store adapter sharing the test client."""
    return RedisStore(redis_client)


@pytest_asyncio.fixture
async def quorum_stores(redis_container: RedisService) -> AsyncIterator[list[RedisStore]]:
    """One store adapter per logical database."""
    stores = [RedisStore.from_url(redis_container.url(db)) for db in QUORUM_DATABASES]
    for store in stores:
        await _wait_for_redis(store.client)
    yield stores
    for store in stores:
        await store.client.flushdb()
        await store.close()


async def _wait_for_redis(client, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
