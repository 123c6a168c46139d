"""
core/clock.py -- Injectable time source.

Every time-based state transition in tokengate (token expiry, lock expiry,
rate-limit windows) reads "now" from a Clock instead of calling
datetime.now() inline, so tests can step through a 2-hour lock or a
15-minute window without sleeping.

All clocks return timezone-aware UTC datetimes.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to.

    Usage:
        clock = ManualClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        clock.advance(minutes=16)
    """

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime.now(timezone.utc)
        if start.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware start time")
        self._now = start.astimezone(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        """Move the clock forward by timedelta(**delta) and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = moment.astimezone(timezone.utc)
