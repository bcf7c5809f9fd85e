"""Lease-based distributed locks over shared key-value stores.

Provides:
- Lock: single-store lease lock with ownership-verified release and extend
- QuorumLock: majority lock over independent stores
- Watchdog renewal of held leases (``auto_renew=True``)
- Store adapters for Redis and an in-memory store for tests

Example:
    from leasehold import Lock
    from leasehold.stores import RedisStore

    lock = Lock(RedisStore.from_url("redis://localhost:6379/0"))

    async with lock.hold("job:42", ttl=10, auto_renew=True) as handle:
        await run_job(handle)
"""

from leasehold.clock import Clock, FakeClock, MonotonicClock
from leasehold.config import LockConfig, Settings, settings
from leasehold.errors import (
    AcquireError,
    AcquireTimeout,
    LockError,
    MisconfigurationError,
    OwnershipLost,
    QuorumNotReached,
    StoreUnavailable,
)
from leasehold.handle import LockHandle, LockState
from leasehold.lock import BaseLock, Lock
from leasehold.quorum import QuorumLock
from leasehold.watchdog import Watchdog

__all__ = [
    "AcquireError",
    "AcquireTimeout",
    "BaseLock",
    "Clock",
    "FakeClock",
    "Lock",
    "LockConfig",
    "LockError",
    "LockHandle",
    "LockState",
    "MisconfigurationError",
    "MonotonicClock",
    "OwnershipLost",
    "QuorumLock",
    "QuorumNotReached",
    "Settings",
    "StoreUnavailable",
    "Watchdog",
    "settings",
]

__version__ = "0.1.0"
