"""Majority lock over N independent stores.

The stores do not replicate between each other; each one fails on its own.
A lease is valid when a majority (N // 2 + 1) accepted the same token and the
round finished with time to spare:

    validity = ttl - elapsed - drift_margin > 0

A failed round removes the partial leases it created (best effort) before
retrying, so other callers do not have to wait for them to expire. Pass
``cleanup_on_failure=False`` to rely on TTL expiry instead; recovery is
slower but every round touches fewer stores.

Known limitation:
    A holder paused for longer than its validity (GC stall, preempted
    scheduler, suspended VM) can wake up believing it still holds the lock
    while another caller legitimately acquired it in the meantime. The lock
    manager cannot detect this. Protect the resource itself with a fencing
    token: a number that increases with every acquisition, passed along with
    each write, so the resource can reject writes carrying an older number.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence

from leasehold.clock import Clock
from leasehold.config import MIN_QUORUM_SIZE, LockConfig, Settings
from leasehold.errors import MisconfigurationError, QuorumNotReached, StoreUnavailable
from leasehold.handle import LockHandle
from leasehold.lock import BaseLock
from leasehold.stores.base import StoreAdapter
from leasehold.stores.redis import RedisStore

logger = logging.getLogger(__name__)

StoreCall = Callable[[StoreAdapter], Awaitable[bool]]


class QuorumLock(BaseLock):
    """Lease lock requiring a majority of independent stores.

    Args:
        stores: At least three independently failing store adapters
        config: Lock behaviour; ``quorum_size`` must match ``len(stores)`` if set
        clock: Clock for lease math and backoff
        rng: Random source for backoff jitter
        cleanup_on_failure: Delete partial leases after a failed round
    """

    def __init__(
        self,
        stores: Sequence[StoreAdapter],
        config: LockConfig | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        cleanup_on_failure: bool = True,
    ) -> None:
        if len(stores) < MIN_QUORUM_SIZE:
            raise MisconfigurationError(
                f"A quorum lock needs at least {MIN_QUORUM_SIZE} stores, got {len(stores)}"
            )
        super().__init__(stores, config=config, clock=clock, rng=rng)
        if self.config.quorum_size is not None and self.config.quorum_size != len(self.stores):
            raise MisconfigurationError(
                f"quorum_size={self.config.quorum_size} but {len(self.stores)} stores given"
            )
        self.cleanup_on_failure = cleanup_on_failure

    @classmethod
    def from_settings(cls, settings: Settings) -> QuorumLock:
        """Build a lock over every Redis URL in ``settings.redis_urls``."""
        stores = [
            RedisStore.from_url(url, socket_timeout=settings.redis_socket_timeout)
            for url in settings.redis_url_list
        ]
        return cls(stores, config=settings.lock_config())

    @property
    def quorum(self) -> int:
        """Number of stores that must agree."""
        return len(self.stores) // 2 + 1

    async def _on_all(
        self,
        make_call: StoreCall,
        stores: Sequence[StoreAdapter] | None = None,
    ) -> list[bool | None]:
        """Run one primitive on every store concurrently.

        Returns:
            Per store: the primitive's answer, or None if the store was
            unavailable or raised
        """
        targets = self.stores if stores is None else tuple(stores)
        results = await asyncio.gather(
            *(self._call(store, make_call(store)) for store in targets),
            return_exceptions=True,
        )
        answers: list[bool | None] = []
        for store, result in zip(targets, results):
            if isinstance(result, StoreUnavailable):
                logger.debug(f"Store {store.name} unavailable: {result}")
                answers.append(None)
            elif isinstance(result, Exception):
                # One misbehaving store counts as a failed store, not a failed round
                logger.warning(
                    f"Store {store.name} failed: {type(result).__name__}: {result}",
                    exc_info=result,
                )
                answers.append(None)
            elif isinstance(result, BaseException):
                raise result
            else:
                answers.append(bool(result))
        return answers

    def _validity_end(self, ttl: float, started: float, successes: int) -> float | None:
        """Lease end if the round reached a majority in time, else None."""
        drift = self.config.drift_margin(ttl)
        elapsed = self.clock.now() - started
        if successes >= self.quorum and elapsed + drift < ttl:
            return started + ttl - drift
        return None

    async def _try_acquire(self, handle: LockHandle, started: float) -> tuple[float | None, int]:
        key, token, ttl = handle.key, handle.owner_token, handle.ttl
        answers = await self._on_all(lambda store: store.try_set(key, token, ttl))
        successes = sum(1 for answer in answers if answer)

        expires_at = self._validity_end(ttl, started, successes)
        if expires_at is not None:
            return expires_at, successes

        logger.info(
            f"Quorum not reached for '{handle.resource_id}': "
            f"{successes}/{len(self.stores)} (need {self.quorum})"
        )
        if self.cleanup_on_failure:
            # Unreachable stores may have applied the set before failing to answer
            touched = [store for store, answer in zip(self.stores, answers) if answer is not False]
            await self._cleanup(handle, touched)
        return None, successes

    async def _cleanup(self, handle: LockHandle, stores: Sequence[StoreAdapter]) -> None:
        if not stores:
            return
        key, token = handle.key, handle.owner_token
        answers = await self._on_all(lambda store: store.compare_delete(key, token), stores)
        removed = sum(1 for answer in answers if answer)
        logger.debug(f"Cleaned up {removed} partial lease(s) for '{handle.resource_id}'")

    async def _extend_on_stores(
        self, handle: LockHandle, ttl: float, started: float
    ) -> float | None:
        key, token = handle.key, handle.owner_token
        answers = await self._on_all(lambda store: store.compare_extend(key, token, ttl))
        successes = sum(1 for answer in answers if answer)
        expires_at = self._validity_end(ttl, started, successes)
        if expires_at is None:
            logger.warning(
                f"Extend of '{handle.resource_id}' reached {successes}/{len(self.stores)} "
                f"stores (need {self.quorum})"
            )
        return expires_at

    async def _release_on_stores(self, handle: LockHandle) -> bool:
        key, token = handle.key, handle.owner_token
        answers = await self._on_all(lambda store: store.compare_delete(key, token))
        deleted = sum(1 for answer in answers if answer)
        unreachable = sum(1 for answer in answers if answer is None)
        if unreachable:
            logger.info(
                f"Release of '{handle.resource_id}' skipped {unreachable} unreachable store(s)"
            )
        return deleted >= self.quorum

    def _timeout_error(self, handle: LockHandle, successes: int) -> QuorumNotReached:
        return QuorumNotReached(
            handle.resource_id,
            f"Quorum not reached for '{handle.resource_id}': "
            f"{successes}/{len(self.stores)} stores (need {self.quorum})",
            successes=successes,
            required=self.quorum,
        )
