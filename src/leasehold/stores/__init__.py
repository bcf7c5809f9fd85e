"""Store adapters for leasehold.

- StoreAdapter: the atomic primitives every lock is built on
- InMemoryStore: in-process store for tests and local experiments
- RedisStore: redis-py backed store for production
"""

from leasehold.stores.base import StoreAdapter, call_with_timeout
from leasehold.stores.memory import InMemoryStore
from leasehold.stores.redis import RedisStore

__all__ = [
    "StoreAdapter",
    "InMemoryStore",
    "RedisStore",
    "call_with_timeout",
]
