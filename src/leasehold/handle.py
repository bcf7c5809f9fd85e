"""Lock handles and their state machine.

State transitions:
    IDLE -> ACQUIRING -> HELD -> RELEASED | EXPIRED | LOST

RELEASED, EXPIRED and LOST are terminal. A handle never returns to HELD.

The handle is the one piece of shared mutable state: the caller and the
watchdog task both touch it. Store round-trips that change the lease
(extend, release) run under ``handle.mutex``, which is local to this
process and unrelated to the distributed lock itself.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from leasehold.clock import Clock
from leasehold.errors import OwnershipLost
from leasehold.observability.logging import owner_tag

if TYPE_CHECKING:
    from leasehold.stores.base import StoreAdapter
    from leasehold.watchdog import Watchdog

logger = logging.getLogger(__name__)

LossCallback = Callable[["LockHandle"], None]

TOKEN_BYTES = 16  # 128 bits


def new_token() -> str:
    """Generate an unguessable owner token."""
    return secrets.token_hex(TOKEN_BYTES)


class LockState(str, Enum):
    """Lifecycle of a lock handle."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    HELD = "held"
    RELEASED = "released"
    EXPIRED = "expired"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({LockState.RELEASED, LockState.EXPIRED, LockState.LOST})

_ALLOWED: dict[LockState, frozenset[LockState]] = {
    LockState.IDLE: frozenset({LockState.ACQUIRING}),
    LockState.ACQUIRING: frozenset({LockState.HELD}),
    LockState.HELD: TERMINAL_STATES,
}


class LockHandle:
    """Client-side view of one acquired lease.

    Returned by a successful ``acquire``. Observe ownership loss through
    ``lost`` (an ``asyncio.Event``), ``wait_lost()``, ``add_loss_callback()``
    or ``raise_if_lost()`` inside the critical section.

    Attributes:
        resource_id: Caller-facing resource name (e.g., "job:42")
        key: Store key the lease lives under
        owner_token: Token proving ownership
        ttl: Lease duration requested, in seconds
        stores: Store adapter(s) holding the lease
        acquired_at: Clock reading taken before the successful attempt
        expires_at: Local estimate of the lease end
    """

    def __init__(
        self,
        resource_id: str,
        key: str,
        ttl: float,
        stores: tuple[StoreAdapter, ...],
        clock: Clock,
    ) -> None:
        self.resource_id = resource_id
        self.key = key
        self.ttl = ttl
        self.stores = stores
        self.owner_token = ""
        self.acquired_at = 0.0
        self.expires_at = 0.0

        self.mutex = asyncio.Lock()
        self.lost = asyncio.Event()
        self.watchdog: Watchdog | None = None

        self._clock = clock
        self._state = LockState.IDLE
        self._stop_renewal = False
        self._callbacks: list[LossCallback] = []
        self._expiry_timer: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return (
            f"<LockHandle {self.resource_id!r} owner={owner_tag(self.owner_token)} "
            f"state={self._state.value}>"
        )

    @property
    def owner(self) -> str:
        """Loggable prefix of the owner token."""
        return owner_tag(self.owner_token)

    @property
    def state(self) -> LockState:
        """Current state; a HELD lease past its local expiry becomes EXPIRED."""
        if self._state is LockState.HELD and self._clock.now() >= self.expires_at:
            self._transition(LockState.EXPIRED)
        return self._state

    @property
    def is_held(self) -> bool:
        return self.state is LockState.HELD

    @property
    def can_release(self) -> bool:
        """Whether a release may still find our record in a store.

        True for every state but RELEASED once acquired: an expired record can
        outlive the local estimate, and a lost quorum lease usually survives
        on the stores that still answered.
        """
        return self.state in (LockState.HELD, LockState.EXPIRED, LockState.LOST)

    @property
    def remaining(self) -> float:
        """Seconds of local lease validity left."""
        if self.state is not LockState.HELD:
            return 0.0
        return max(0.0, self.expires_at - self._clock.now())

    @property
    def renewal_stopped(self) -> bool:
        """Whether the watchdog has been told to stop."""
        return self._stop_renewal

    def stop_renewal(self) -> None:
        """Set the stop flag the watchdog checks before every extend."""
        self._stop_renewal = True

    def raise_if_lost(self) -> None:
        """Raise ``OwnershipLost`` unless the lease is still held."""
        state = self.state
        if state is not LockState.HELD:
            raise OwnershipLost(self.resource_id, state.value)

    def add_loss_callback(self, callback: LossCallback) -> None:
        """Call ``callback(handle)`` when the lease is lost or expires.

        Called immediately if that already happened.
        """
        if self._state in (LockState.LOST, LockState.EXPIRED):
            callback(self)
            return
        self._callbacks.append(callback)

    async def wait_lost(self, timeout: float | None = None) -> bool:
        """Wait until ownership is lost or the lease expires.

        Args:
            timeout: Maximum time to wait in seconds (None = wait forever)

        Returns:
            True if ownership ended, False on timeout
        """
        try:
            await asyncio.wait_for(self.lost.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ------------------------------------------------------------------
    # Mutation, used by the locks and the watchdog
    # ------------------------------------------------------------------

    def _begin(self, owner_token: str, started_at: float) -> None:
        """Record a fresh acquisition attempt."""
        if self._state is LockState.IDLE:
            self._transition(LockState.ACQUIRING)
        self.owner_token = owner_token
        self.acquired_at = started_at

    def _mark_held(self, expires_at: float) -> None:
        self.expires_at = expires_at
        self._transition(LockState.HELD)
        self._arm_expiry()

    def _refresh(self, expires_at: float) -> None:
        if self._state is not LockState.HELD:
            return
        self.expires_at = expires_at
        self._arm_expiry()

    def _arm_expiry(self) -> None:
        """(Re)start the timer that ends the lease at ``expires_at``."""
        self._cancel_expiry()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run a timer on; expiry is still detected on read
            return
        self._expiry_timer = asyncio.create_task(
            self._expire_when_due(), name=f"leasehold-expiry:{self.resource_id}"
        )

    def _cancel_expiry(self) -> None:
        timer, self._expiry_timer = self._expiry_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire_when_due(self) -> None:
        # Loops because a real clock may wake the sleeper marginally early
        while self._state is LockState.HELD:
            await self._clock.sleep(self.expires_at - self._clock.now())
            if self.state is LockState.EXPIRED:
                logger.warning(f"Lease on '{self.resource_id}' expired")

    def _finish(self, state: LockState) -> None:
        """Move a HELD handle into a terminal state; no-op if already terminal."""
        if self._state.is_terminal:
            return
        self._transition(state)

    def _transition(self, new: LockState) -> None:
        allowed = _ALLOWED.get(self._state, frozenset())
        if new not in allowed:
            raise RuntimeError(
                f"Illegal lock state transition {self._state.value} -> {new.value}"
            )
        self._state = new
        if new.is_terminal:
            self._cancel_expiry()
        if new in (LockState.LOST, LockState.EXPIRED):
            self._signal_loss()

    def _signal_loss(self) -> None:
        self.lost.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(f"Loss callback failed for '{self.resource_id}'")
