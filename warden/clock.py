"""
Warden - Clock

Time source injected into every manager so that expiry logic can be
tested deterministically. All timestamps are naive UTC, matching what
the relational store returns for DateTime columns.
"""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything with a now() returning naive UTC."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    """Naive UTC timestamp for column defaults."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
