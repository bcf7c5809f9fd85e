"""Monotonic clock sources.

All lease arithmetic and every suspension point (acquire backoff, watchdog
cycles) go through a ``Clock`` so tests can drive time explicitly:

    clock = FakeClock()
    lock = Lock(InMemoryStore(clock=clock), clock=clock)
    handle = await lock.acquire("job:42", ttl=0.2, auto_renew=True)
    await clock.advance(1.0)  # runs every renewal due in that window
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time provider."""

    def now(self) -> float:
        """Return monotonic seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds`` of this clock's time."""
        ...


class MonotonicClock:
    """Production clock backed by ``time.monotonic()``."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class FakeClock:
    """Manually advanced clock for deterministic tests.

    ``sleep()`` parks the caller until ``advance()`` moves time past its
    deadline. Sleepers are woken in deadline order and the event loop is
    given a few turns after each wake-up so woken tasks can finish their
    work (and schedule their next sleep) before time moves on.
    """

    SETTLE_ITERATIONS = 50

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        """Number of tasks currently parked in ``sleep()``."""
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), future))
        # Cancelling the sleeping task cancels the future; advance() skips it.
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper due on the way."""
        target = self._now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
                await self.settle()
        self._now = target
        await self.settle()

    async def settle(self) -> None:
        """Give runnable tasks a chance to reach their next suspension point."""
        for _ in range(self.SETTLE_ITERATIONS):
            await asyncio.sleep(0)
