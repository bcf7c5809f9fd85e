"""Store adapter contract.

A store adapter wraps one coordination-store connection and exposes the four
primitives the locks are built on. The first three must be atomic on the
store side; ``get`` is a diagnostic read only.

Every primitive raises ``StoreUnavailable`` when the store cannot answer.
A logical refusal (key present, token mismatch) is ``False``, never an
exception: callers retry the former and abandon on the latter.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import TypeVar

from leasehold.errors import StoreUnavailable

T = TypeVar("T")


class StoreAdapter(ABC):
    """One independently failing coordination store."""

    name: str = "store"

    @abstractmethod
    async def try_set(self, key: str, token: str, ttl: float) -> bool:
        """Set ``key`` to ``token`` with expiry ``ttl`` only if absent.

        Returns:
            True if this call created the record
        """

    @abstractmethod
    async def compare_delete(self, key: str, token: str) -> bool:
        """Delete ``key`` only if its value equals ``token``.

        Returns:
            True if the record was deleted
        """

    @abstractmethod
    async def compare_extend(self, key: str, token: str, ttl: float) -> bool:
        """Reset the expiry of ``key`` to ``ttl`` only if its value equals ``token``.

        Returns:
            True if the expiry was reset
        """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the current token stored under ``key``, if any."""

    async def close(self) -> None:
        """Release connections held by the adapter."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


async def call_with_timeout(call: Awaitable[T], timeout: float, store: StoreAdapter) -> T:
    """Await a single store call, bounded by ``timeout`` seconds.

    A timeout is reported as ``StoreUnavailable`` so one stalled store cannot
    hold up an acquire, extend or quorum round.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreUnavailable(store.name, f"call timed out after {timeout}s") from e
