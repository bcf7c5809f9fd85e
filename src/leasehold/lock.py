"""Lease-based distributed locks.

A lease is a store record ``key_prefix + resource_id -> owner_token`` with a
store-managed expiry. Acquire is a set-if-absent; release and extend only act
if the stored token is still ours, so a caller can never delete or extend a
lease someone else holds.

Example:
    lock = Lock(RedisStore.from_url("redis://localhost:6379/0"))

    async with lock.hold("job:42", ttl=10, auto_renew=True) as handle:
        for chunk in work:
            handle.raise_if_lost()  # Stop as soon as ownership is gone
            await process(chunk)

    # Or explicitly
    handle = await lock.acquire("job:42", ttl=10, wait_timeout=0)
    try:
        ...
    finally:
        if not await lock.release(handle):
            # Lease had already expired; treat the critical section as suspect
            ...
"""

from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from types import TracebackType
from typing import Any

from leasehold.clock import Clock, MonotonicClock
from leasehold.config import LockConfig, Settings, validate_ttl
from leasehold.errors import AcquireTimeout, MisconfigurationError, StoreUnavailable
from leasehold.handle import LockHandle, LockState, new_token
from leasehold.observability.logging import LogContext
from leasehold.stores.base import StoreAdapter, call_with_timeout
from leasehold.stores.redis import RedisStore
from leasehold.watchdog import Watchdog

logger = logging.getLogger(__name__)

# Marks "use the configured default" where None is itself meaningful
_UNSET: Any = object()

# Caps the backoff exponent; the delay is clamped by retry_max_interval anyway
_MAX_BACKOFF_EXPONENT = 32


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    rng: random.Random,
) -> float:
    """Bounded exponential backoff with jitter.

    The delay doubles per attempt up to ``cap`` and is then scaled by a
    random factor in [0.5, 1.0] so contending callers spread out.
    """
    delay = min(cap, base * (2 ** min(attempt, _MAX_BACKOFF_EXPONENT)))
    return delay * rng.uniform(0.5, 1.0)


class BaseLock(ABC):
    """Acquire/extend/release flow shared by the single-store and quorum locks.

    Subclasses implement the store round-trips; this class owns retries,
    the handle state machine, and the watchdog.
    """

    def __init__(
        self,
        stores: Sequence[StoreAdapter],
        config: LockConfig | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not stores:
            raise MisconfigurationError("At least one store is required")
        self.stores = tuple(stores)
        self.config = config or LockConfig()
        self.clock = clock or MonotonicClock()
        self._rng = rng or random.SystemRandom()

    def key_for(self, resource_id: str) -> str:
        """Store key for a resource."""
        return f"{self.config.key_prefix}{resource_id}"

    async def acquire(
        self,
        resource_id: str,
        ttl: float | None = None,
        wait_timeout: float | None = _UNSET,
        retry_interval: float | None = None,
        auto_renew: bool | None = None,
    ) -> LockHandle:
        """Acquire a lease on ``resource_id``.

        Every attempt uses a fresh owner token. An attempt whose reply is lost
        (timeout, dropped connection) may still have been applied by the
        store, so it is followed by a best-effort delete for that attempt's
        token. If the store is unreachable for that delete too, the orphaned
        lease blocks the resource, this caller included, until its TTL runs
        out.

        Args:
            resource_id: Name of the shared resource
            ttl: Lease duration in seconds (default from config)
            wait_timeout: Seconds to keep retrying; 0 for a single attempt,
                None to wait forever (default from config)
            retry_interval: Base backoff delay in seconds (default from config)
            auto_renew: Keep the lease alive with a watchdog (default from config)

        Returns:
            Handle in the HELD state

        Raises:
            AcquireTimeout: Resource still busy when the wait budget ran out,
                or the store stayed unreachable past its error budget
            MisconfigurationError: Invalid ttl or timings
        """
        config = self.config
        ttl = validate_ttl(ttl) if ttl is not None else config.ttl
        if ttl <= config.per_store_timeout:
            raise MisconfigurationError("ttl must be larger than per_store_timeout")
        if wait_timeout is _UNSET:
            wait_timeout = config.wait_timeout
        if wait_timeout is not None and wait_timeout < 0:
            raise MisconfigurationError("wait_timeout must be >= 0 or None")
        base_delay = retry_interval if retry_interval is not None else config.retry_interval
        if base_delay <= 0:
            raise MisconfigurationError("retry_interval must be > 0")
        renew = config.auto_renew if auto_renew is None else auto_renew

        handle = LockHandle(resource_id, self.key_for(resource_id), ttl, self.stores, self.clock)
        deadline = None if wait_timeout is None else self.clock.now() + wait_timeout
        attempt = 0
        consecutive_errors = 0
        last_error: StoreUnavailable | None = None
        successes = 0

        with LogContext(resource_id=resource_id):
            while True:
                started = self.clock.now()
                handle._begin(new_token(), started)
                try:
                    expires_at, successes = await self._try_acquire(handle, started)
                except StoreUnavailable as e:
                    consecutive_errors += 1
                    last_error = e
                    logger.warning(f"Acquire attempt on '{resource_id}' failed: {e}")
                    if consecutive_errors > config.store_unavailable_budget:
                        raise AcquireTimeout(
                            resource_id,
                            f"Store unavailable while acquiring '{resource_id}' "
                            f"({consecutive_errors} consecutive errors)",
                        ) from e
                    expires_at = None
                else:
                    consecutive_errors = 0

                if expires_at is not None:
                    handle._mark_held(expires_at)
                    with LogContext(owner=handle.owner):
                        logger.info(f"Acquired '{resource_id}' after {attempt + 1} attempt(s)")
                        if renew:
                            self._start_watchdog(handle)
                    return handle

                now = self.clock.now()
                if deadline is not None and now >= deadline:
                    logger.info(f"Gave up acquiring '{resource_id}' after {attempt + 1} attempt(s)")
                    raise self._timeout_error(handle, successes) from last_error

                delay = backoff_delay(attempt, base_delay, config.retry_max_interval, self._rng)
                if deadline is not None:
                    delay = min(delay, deadline - now)
                attempt += 1
                await self.clock.sleep(delay)

    async def extend(self, handle: LockHandle, ttl: float | None = None) -> bool:
        """Reset the lease to ``ttl`` seconds from now (default: the handle's ttl).

        Returns:
            True if the lease was extended. False means ownership is lost:
            the handle is marked LOST and its loss signal fires.

        Raises:
            StoreUnavailable: The store could not answer (single-store lock)
        """
        ttl = validate_ttl(ttl) if ttl is not None else handle.ttl
        async with handle.mutex:
            if handle.state is not LockState.HELD:
                return False
            started = self.clock.now()
            expires_at = await self._extend_on_stores(handle, ttl, started)
            if expires_at is None:
                handle._finish(LockState.LOST)
                with LogContext(resource_id=handle.resource_id, owner=handle.owner):
                    logger.warning(f"Ownership of '{handle.resource_id}' lost")
                return False
            handle._refresh(expires_at)
            logger.debug(f"Extended '{handle.resource_id}' by {ttl:.3f}s")
            return True

    async def release(self, handle: LockHandle) -> bool:
        """Release the lease.

        The watchdog is stopped and awaited before the delete is issued.
        A handle already marked LOST still has its token deleted wherever it
        survives, since a failed quorum extend leaves leases behind on the
        stores that answered.

        Returns:
            True if this call removed our lease. False if it was no longer
            ours (expired, possibly re-acquired by someone else), ownership
            had already been lost, or the handle was already released; the
            caller's critical section may have been violated in that case.

        Raises:
            StoreUnavailable: The store could not answer (single-store lock);
                the handle stays releasable so the call can be retried
        """
        await self.stop_renewal(handle)
        async with handle.mutex:
            if not handle.can_release:
                return False
            with LogContext(resource_id=handle.resource_id, owner=handle.owner):
                was_lost = handle.state is LockState.LOST
                deleted = await self._release_on_stores(handle)
                if was_lost:
                    logger.info(f"Cleared leftover leases of lost '{handle.resource_id}'")
                    return False
                if deleted:
                    handle._finish(LockState.RELEASED)
                    logger.info(f"Released '{handle.resource_id}'")
                    return True
                expired = self.clock.now() >= handle.expires_at
                handle._finish(LockState.EXPIRED if expired else LockState.LOST)
                logger.warning(
                    f"Release of '{handle.resource_id}' found the lease gone "
                    f"({'expired' if expired else 'lost'})"
                )
                return False

    async def stop_renewal(self, handle: LockHandle) -> None:
        """Stop the handle's watchdog and let the lease run out on schedule."""
        handle.stop_renewal()
        if handle.watchdog is not None:
            await handle.watchdog.stop()

    @asynccontextmanager
    async def hold(self, resource_id: str, **kwargs: Any) -> AsyncIterator[LockHandle]:
        """Acquire for the duration of an ``async with`` block.

        Keyword arguments are passed to ``acquire``.
        """
        handle = await self.acquire(resource_id, **kwargs)
        try:
            yield handle
        finally:
            try:
                released = await self.release(handle)
            except StoreUnavailable as e:
                logger.warning(f"Could not release '{resource_id}', lease will expire: {e}")
            else:
                if not released:
                    logger.warning(f"Lease on '{resource_id}' ended before release")

    async def close(self) -> None:
        """Close all store adapters."""
        for store in self.stores:
            await store.close()

    async def __aenter__(self) -> BaseLock:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _start_watchdog(self, handle: LockHandle) -> None:
        interval = handle.ttl * self.config.renewal_fraction
        watchdog = Watchdog(self, handle, self.clock, interval)
        handle.watchdog = watchdog
        watchdog.start()

    async def _call(self, store: StoreAdapter, call: Any) -> Any:
        return await call_with_timeout(call, self.config.per_store_timeout, store)

    def _timeout_error(self, handle: LockHandle, successes: int) -> AcquireTimeout:
        return AcquireTimeout(handle.resource_id, f"Timed out acquiring '{handle.resource_id}'")

    @abstractmethod
    async def _try_acquire(self, handle: LockHandle, started: float) -> tuple[float | None, int]:
        """One acquisition attempt with ``handle.owner_token``.

        Returns:
            (expires_at or None, number of stores that accepted)
        """

    @abstractmethod
    async def _extend_on_stores(
        self, handle: LockHandle, ttl: float, started: float
    ) -> float | None:
        """Extend on the store(s); returns the new expiry or None if refused."""

    @abstractmethod
    async def _release_on_stores(self, handle: LockHandle) -> bool:
        """Delete the lease on the store(s); returns whether it was ours."""


class Lock(BaseLock):
    """Lease lock against a single store.

    Args:
        store: Store adapter holding the leases
        config: Lock behaviour (defaults to ``LockConfig()``)
        clock: Clock for lease math and backoff (defaults to monotonic time)
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        store: StoreAdapter,
        config: LockConfig | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__([store], config=config, clock=clock, rng=rng)
        self.store = store

    @classmethod
    def from_settings(cls, settings: Settings) -> Lock:
        """Build a Redis-backed lock from environment settings."""
        store = RedisStore.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
        return cls(store, config=settings.lock_config())

    async def _try_acquire(self, handle: LockHandle, started: float) -> tuple[float | None, int]:
        try:
            acquired = await self._call(
                self.store, self.store.try_set(handle.key, handle.owner_token, handle.ttl)
            )
        except StoreUnavailable:
            # The set may have landed before the reply was lost
            await self._discard_attempt(handle)
            raise
        if acquired:
            return started + handle.ttl, 1
        return None, 0

    async def _extend_on_stores(
        self, handle: LockHandle, ttl: float, started: float
    ) -> float | None:
        extended = await self._call(
            self.store, self.store.compare_extend(handle.key, handle.owner_token, ttl)
        )
        return started + ttl if extended else None

    async def _release_on_stores(self, handle: LockHandle) -> bool:
        return bool(
            await self._call(self.store, self.store.compare_delete(handle.key, handle.owner_token))
        )

    async def _discard_attempt(self, handle: LockHandle) -> None:
        try:
            await self._call(
                self.store, self.store.compare_delete(handle.key, handle.owner_token)
            )
        except StoreUnavailable as e:
            logger.debug(f"Could not discard unanswered attempt on '{handle.resource_id}': {e}")
