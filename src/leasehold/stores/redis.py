"""Redis store adapter.

Uses the redis-py async client. Acquire is a single ``SET NX PX``; the two
compare-and-X primitives run as Lua scripts so the token check and the write
happen atomically on the server.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TYPE_CHECKING, cast

import redis.asyncio as redis
from redis.exceptions import RedisError

from leasehold.errors import StoreUnavailable
from leasehold.stores.base import StoreAdapter

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

COMPARE_DELETE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

COMPARE_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

# Transport failures plus server-side refusals (READONLY replica after a
# failover, OOM, MISCONF); the store cannot serve the lease either way
_UNAVAILABLE = (RedisError, OSError)


def _to_ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


class RedisStore(StoreAdapter):
    """Store adapter for a single Redis instance.

    Args:
        client: redis-py async client
        name: Name used in logs and errors (defaults to the connection host)
        owns_client: Close the client on ``close()``
    """

    def __init__(self, client: Redis, name: str | None = None, owns_client: bool = False) -> None:
        self.client = client
        self.name = name or _describe(client)
        self._owns_client = owns_client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float | None = 0.5) -> RedisStore:
        """Create an adapter with its own connection pool."""
        client = redis.from_url(  # type: ignore[no-untyped-call]
            url,
            encoding="utf-8",
            decode_responses=False,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, name=url, owns_client=True)

    async def try_set(self, key: str, token: str, ttl: float) -> bool:
        try:
            acquired = await self.client.set(key, token, nx=True, px=_to_ms(ttl))
        except _UNAVAILABLE as e:
            raise StoreUnavailable(self.name, str(e)) from e
        return bool(acquired)

    async def compare_delete(self, key: str, token: str) -> bool:
        try:
            result = await cast(
                Awaitable[int],
                self.client.eval(COMPARE_DELETE_SCRIPT, 1, key, token),
            )
        except _UNAVAILABLE as e:
            raise StoreUnavailable(self.name, str(e)) from e
        return bool(result)

    async def compare_extend(self, key: str, token: str, ttl: float) -> bool:
        try:
            result = await cast(
                Awaitable[int],
                self.client.eval(COMPARE_EXTEND_SCRIPT, 1, key, token, _to_ms(ttl)),
            )
        except _UNAVAILABLE as e:
            raise StoreUnavailable(self.name, str(e)) from e
        return bool(result)

    async def get(self, key: str) -> str | None:
        try:
            value = await self.client.get(key)
        except _UNAVAILABLE as e:
            raise StoreUnavailable(self.name, str(e)) from e
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else value

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
            logger.debug(f"Closed Redis connection for {self.name}")


def _describe(client: Redis) -> str:
    kwargs = client.connection_pool.connection_kwargs
    host = kwargs.get("host", "redis")
    port = kwargs.get("port", 6379)
    return f"{host}:{port}/{kwargs.get('db', 0)}"
