"""Time helpers shared by the attribution and uncertainty services."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

_SECONDS_PER_DAY = 86_400


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def whole_days_between(later: datetime, earlier: datetime) -> int:
    """Number of whole days from ``earlier`` to ``later`` (floored)."""
    elapsed = (as_utc(later) - as_utc(earlier)).total_seconds()
    return int(elapsed // _SECONDS_PER_DAY)


__all__ = ["Clock", "as_utc", "utcnow", "whole_days_between"]
