"""In-memory store adapter.

Used for:
- Tests (including fault injection with ``kill()`` / ``revive()``)
- Local experiments

NOT for production: the "store" lives inside one process.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from leasehold.clock import Clock, MonotonicClock
from leasehold.errors import StoreUnavailable
from leasehold.stores.base import StoreAdapter


@dataclass
class _Record:
    token: str
    expires_at: float


class InMemoryStore(StoreAdapter):
    """Store adapter backed by a dict, with expiry driven by a ``Clock``.

    Each primitive runs under an ``asyncio.Lock`` so concurrent callers on the
    same loop see the same total order a real store would give them.
    ``calls`` records ``(operation, key)`` for every call that reached the
    store, including refused ones.
    """

    def __init__(self, clock: Clock | None = None, name: str = "memory") -> None:
        self.name = name
        self.clock = clock or MonotonicClock()
        self.calls: list[tuple[str, str]] = []
        self._records: dict[str, _Record] = {}
        self._lock = asyncio.Lock()
        self._available = True

    @property
    def available(self) -> bool:
        return self._available

    def kill(self) -> None:
        """Make every subsequent call raise ``StoreUnavailable``."""
        self._available = False

    def revive(self) -> None:
        self._available = True

    def _check_available(self) -> None:
        if not self._available:
            raise StoreUnavailable(self.name, "connection refused")

    def _live(self, key: str) -> _Record | None:
        record = self._records.get(key)
        if record is not None and self.clock.now() >= record.expires_at:
            del self._records[key]
            return None
        return record

    async def try_set(self, key: str, token: str, ttl: float) -> bool:
        self._check_available()
        async with self._lock:
            self.calls.append(("try_set", key))
            if self._live(key) is not None:
                return False
            self._records[key] = _Record(token=token, expires_at=self.clock.now() + ttl)
            return True

    async def compare_delete(self, key: str, token: str) -> bool:
        self._check_available()
        async with self._lock:
            self.calls.append(("compare_delete", key))
            record = self._live(key)
            if record is None or record.token != token:
                return False
            del self._records[key]
            return True

    async def compare_extend(self, key: str, token: str, ttl: float) -> bool:
        self._check_available()
        async with self._lock:
            self.calls.append(("compare_extend", key))
            record = self._live(key)
            if record is None or record.token != token:
                return False
            record.expires_at = self.clock.now() + ttl
            return True

    async def get(self, key: str) -> str | None:
        self._check_available()
        record = self._live(key)
        return record.token if record is not None else None

    def ttl_remaining(self, key: str) -> float | None:
        """Seconds until ``key`` expires, or None if absent."""
        record = self._live(key)
        if record is None:
            return None
        return record.expires_at - self.clock.now()
