"""Background lease renewal.

A watchdog keeps a held lease alive while its holder is still working:

1. Check the stop flag
2. Sleep ``interval`` on the lock's clock (ttl * renewal_fraction by default)
3. Check the stop flag again
4. Extend the lease

If the extend is refused, the handle is already LOST (the lock marks it) and
the watchdog exits. Any unexpected error is logged and marks the handle
LOST as well. A transient ``StoreUnavailable`` is retried on the next
cycle for as long as the local lease estimate is still in the future.

``stop()`` sets the stop flag, cancels the task and waits for it to finish.
Release calls it before deleting the key, so a renewal can never land after
the delete.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from leasehold.errors import MisconfigurationError, StoreUnavailable
from leasehold.handle import LockState

if TYPE_CHECKING:
    from leasehold.clock import Clock
    from leasehold.handle import LockHandle
    from leasehold.lock import BaseLock

logger = logging.getLogger(__name__)


class Watchdog:
    """Renews one handle's lease until stopped or ownership is lost.

    Args:
        lock: Lock that owns the handle (provides ``extend``)
        handle: Handle to keep alive
        clock: Clock driving the renewal cycle
        interval: Seconds between renewals; must be smaller than the TTL
    """

    def __init__(
        self,
        lock: BaseLock,
        handle: LockHandle,
        clock: Clock,
        interval: float,
    ) -> None:
        if not 0 < interval < handle.ttl:
            raise MisconfigurationError("Renewal interval must be within (0, ttl)")
        self.lock = lock
        self.handle = handle
        self.clock = clock
        self.interval = interval
        self.renewals = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the renewal task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"leasehold-watchdog:{self.handle.resource_id}"
        )
        logger.debug(
            f"Watchdog started for '{self.handle.resource_id}' "
            f"(interval={self.interval:.3f}s)"
        )

    async def stop(self) -> None:
        """Stop renewing and wait for the task to terminate."""
        self.handle.stop_renewal()
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Called from inside the loop (e.g., a loss callback); the flag suffices
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Watchdog stopped for '{self.handle.resource_id}'")

    async def _run(self) -> None:
        handle = self.handle
        while not handle.renewal_stopped:
            await self.clock.sleep(self.interval)
            if handle.renewal_stopped:
                break
            if not await self._renew_once():
                break

    async def _renew_once(self) -> bool:
        """Run one renewal. Returns whether the watchdog should keep going."""
        handle = self.handle
        try:
            extended = await self.lock.extend(handle)
        except StoreUnavailable as e:
            if handle.state is LockState.HELD:
                logger.warning(
                    f"Renewal of '{handle.resource_id}' failed, will retry: {e}"
                )
                return True
            logger.error(f"Lease on '{handle.resource_id}' ran out while the store was unreachable")
            return False
        except Exception:
            # Any other failure ends ownership as far as the holder can tell
            logger.exception(f"Renewal of '{handle.resource_id}' failed unexpectedly")
            handle._finish(LockState.LOST)
            return False

        if extended:
            self.renewals += 1
            return True

        if handle.renewal_stopped:
            return False
        logger.warning(f"Watchdog giving up on '{handle.resource_id}': ownership lost")
        return False
