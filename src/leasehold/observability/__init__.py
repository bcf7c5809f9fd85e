"""Observability helpers for leasehold.

Provides structured logging with lock context:
- JSON logs for aggregation, console logs for development
- Resource and owner context propagated via context variables
"""

from leasehold.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    configure_logging,
    owner_tag,
)

__all__ = [
    "ConsoleFormatter",
    "JsonFormatter",
    "LogContext",
    "configure_logging",
    "owner_tag",
]
