"""Exception taxonomy for leasehold.

Hierarchy:
    LockError
    ├── StoreUnavailable        transient transport or timeout failure
    ├── AcquireError
    │   └── AcquireTimeout      resource busy within the wait budget
    │       └── QuorumNotReached
    ├── OwnershipLost           lease no longer held by this caller
    └── MisconfigurationError   rejected at construction, never retried

A logical "no" from the store (token mismatch, key already present) is never
an exception. Only an unreachable store raises.
"""

from __future__ import annotations


class LockError(Exception):
    """Base class for all leasehold errors."""


class StoreUnavailable(LockError):
    """A single store call failed on transport or timed out.

    Distinct from a ``False`` result: the store could not answer at all,
    so the caller cannot tell whether the operation took effect.
    """

    def __init__(self, store: str, message: str = "store unavailable") -> None:
        self.store = store
        super().__init__(f"{store}: {message}")


class AcquireError(LockError):
    """Acquisition did not produce a lock handle."""

    def __init__(self, resource_id: str, message: str) -> None:
        self.resource_id = resource_id
        super().__init__(message)


class AcquireTimeout(AcquireError):
    """The wait budget elapsed without acquiring the resource."""


class QuorumNotReached(AcquireTimeout):
    """Fewer than a majority of stores accepted the lease in time."""

    def __init__(self, resource_id: str, message: str, successes: int = 0, required: int = 0):
        self.successes = successes
        self.required = required
        super().__init__(resource_id, message)


class OwnershipLost(LockError):
    """The lease is no longer held by this handle.

    Continuing the critical section after this is a correctness violation
    for the caller.
    """

    def __init__(self, resource_id: str, state: str) -> None:
        self.resource_id = resource_id
        self.state = state
        super().__init__(f"Ownership of '{resource_id}' lost (state={state})")


class MisconfigurationError(LockError, ValueError):
    """Invalid lock configuration."""
