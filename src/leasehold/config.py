from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from leasehold.errors import MisconfigurationError
from leasehold.observability.logging import configure_logging

DEFAULT_KEY_PREFIX = "leasehold:"
MIN_QUORUM_SIZE = 3


@dataclass
class LockConfig:
    """Lock behaviour. All durations are seconds.

    ``wait_timeout=None`` waits forever; ``0`` makes a single attempt.
    ``clock_drift_margin=None`` derives the margin from the TTL
    (1% of the TTL plus 2ms).
    """

    ttl: float = 30.0
    wait_timeout: float | None = 10.0
    retry_interval: float = 0.1
    retry_max_interval: float = 2.0

    # Renewal
    auto_renew: bool = False
    renewal_fraction: float = 1 / 3

    # Quorum
    quorum_size: int | None = None
    per_store_timeout: float = 0.5
    clock_drift_margin: float | None = None

    # Consecutive StoreUnavailable errors tolerated inside one acquire
    store_unavailable_budget: int = 3

    key_prefix: str = DEFAULT_KEY_PREFIX

    def __post_init__(self) -> None:
        validate_ttl(self.ttl)
        if self.wait_timeout is not None and self.wait_timeout < 0:
            raise MisconfigurationError("wait_timeout must be >= 0 or None")
        if self.retry_interval <= 0:
            raise MisconfigurationError("retry_interval must be > 0")
        if self.retry_max_interval < self.retry_interval:
            raise MisconfigurationError("retry_max_interval must be >= retry_interval")
        if not 0 < self.renewal_fraction < 1:
            raise MisconfigurationError("renewal_fraction must be within (0, 1)")
        if self.quorum_size is not None and self.quorum_size < MIN_QUORUM_SIZE:
            raise MisconfigurationError(f"quorum_size must be >= {MIN_QUORUM_SIZE}")
        if self.per_store_timeout <= 0:
            raise MisconfigurationError("per_store_timeout must be > 0")
        if self.per_store_timeout >= self.ttl:
            raise MisconfigurationError("per_store_timeout must be smaller than ttl")
        if self.clock_drift_margin is not None and not 0 <= self.clock_drift_margin < self.ttl:
            raise MisconfigurationError("clock_drift_margin must be within [0, ttl)")
        if self.store_unavailable_budget < 0:
            raise MisconfigurationError("store_unavailable_budget must be >= 0")

    def drift_margin(self, ttl: float) -> float:
        """Clock drift allowance for a lease of ``ttl`` seconds."""
        if self.clock_drift_margin is not None:
            return self.clock_drift_margin
        return ttl * 0.01 + 0.002


def validate_ttl(ttl: float) -> float:
    if ttl <= 0:
        raise MisconfigurationError("ttl must be > 0")
    return ttl


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LEASEHOLD_", env_file=".env", extra="ignore")

    # Single-store lock
    redis_url: str = "redis://localhost:6379/0"

    # Quorum lock: independent stores, comma separated
    redis_urls: str = ""

    # Socket timeout handed to redis-py, per connection
    redis_socket_timeout: float = 0.5

    key_prefix: str = DEFAULT_KEY_PREFIX

    lock_ttl: float = Field(default=30.0, gt=0)
    wait_timeout: float | None = 10.0
    retry_interval: float = 0.1
    retry_max_interval: float = 2.0
    auto_renew: bool = False
    renewal_fraction: float = 1 / 3
    quorum_size: int | None = None
    per_store_timeout: float = 0.5
    clock_drift_margin: float | None = None
    store_unavailable_budget: int = 3

    # Observability
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def redis_url_list(self) -> list[str]:
        """Quorum store URLs, falling back to the single ``redis_url``."""
        urls = [url.strip() for url in self.redis_urls.split(",") if url.strip()]
        return urls or [self.redis_url]

    def configure_logging(self) -> None:
        """Install log handlers using ``log_level`` and ``log_json``."""
        configure_logging(json_format=self.log_json, level=self.log_level)

    def lock_config(self) -> LockConfig:
        """Build a validated ``LockConfig`` from these settings."""
        return LockConfig(
            ttl=self.lock_ttl,
            wait_timeout=self.wait_timeout,
            retry_interval=self.retry_interval,
            retry_max_interval=self.retry_max_interval,
            auto_renew=self.auto_renew,
            renewal_fraction=self.renewal_fraction,
            quorum_size=self.quorum_size,
            per_store_timeout=self.per_store_timeout,
            clock_drift_margin=self.clock_drift_margin,
            store_unavailable_budget=self.store_unavailable_budget,
            key_prefix=self.key_prefix,
        )


settings = Settings()
