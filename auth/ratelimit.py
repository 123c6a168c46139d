"""
auth/ratelimit.py -- Per-source login rate limiting.

Algorithm (per source identifier, typically the client address):
  1. Drop windows whose start is at least `window` ago.
  2. If the source's window holds `max_attempts` attempts already, reject with
     RateLimited(retry_after = seconds left in that window).
  3. Otherwise count the attempt (opening a new window at `now` if needed).

The window opens on the first attempt, so a burst of five attempts blocks the
source until fifteen minutes after the first of them.

This limiter is independent of the per-principal LockoutTracker: it bounds
how many guesses one source can make across many accounts, while the lockout
bounds guesses against one account from any source.

Storage is injected through the CounterStore protocol:
  MemoryCounterStore -- process-local dict behind a lock. Counters are not
                        shared between API instances.
  SQLCounterStore    -- table in the auth database; every instance pointed at
                        the same database shares counters. The increment is a
                        compare-and-set (UPDATE ... WHERE attempts < max).
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, and_, select

from auth.errors import RateLimited
from auth.store import AuthDatabase, from_iso, to_iso
from core.clock import Clock, SystemClock

logger = logging.getLogger("tokengate.ratelimit")


@dataclass(frozen=True)
class Window:
    count: int
    window_start: datetime


@dataclass(frozen=True)
class Decision:
    allowed: bool
    window: Window


class CounterStore(Protocol):
    def acquire(self, key: str, now: datetime, window: timedelta, limit: int) -> Decision: ...

    def purge(self, now: datetime, window: timedelta) -> int: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryCounterStore:
    def __init__(self) -> None:
        self._windows: dict[str, Window] = {}
        self._lock = threading.Lock()

    def _purge_locked(self, now: datetime, window: timedelta) -> int:
        stale = [k for k, w in self._windows.items() if w.window_start + window <= now]
        for k in stale:
            del self._windows[k]
        return len(stale)

    def acquire(self, key: str, now: datetime, window: timedelta, limit: int) -> Decision:
        with self._lock:
            self._purge_locked(now, window)
            current = self._windows.get(key)
            if current is None:
                current = Window(count=1, window_start=now)
                self._windows[key] = current
                return Decision(allowed=True, window=current)
            if current.count >= limit:
                return Decision(allowed=False, window=current)
            current = Window(count=current.count + 1, window_start=current.window_start)
            self._windows[key] = current
            return Decision(allowed=True, window=current)

    def purge(self, now: datetime, window: timedelta) -> int:
        with self._lock:
            return self._purge_locked(now, window)

    def __len__(self) -> int:
        return len(self._windows)


# ---------------------------------------------------------------------------
# Shared (database) backend
# ---------------------------------------------------------------------------

_metadata = MetaData()

_windows = Table(
    "rate_limit_windows",
    _metadata,
    Column("source_key", String(255), primary_key=True),
    Column("attempts", Integer, nullable=False),
    Column("window_start", String(40), nullable=False),
)


class SQLCounterStore:
    """Rate-limit windows stored in the auth database."""

    def __init__(self, db: AuthDatabase) -> None:
        self.engine = db.engine
        _metadata.create_all(self.engine)

    def acquire(self, key: str, now: datetime, window: timedelta, limit: int) -> Decision:
        t = _windows
        with self.engine.begin() as conn:
            conn.execute(t.delete().where(t.c.window_start <= to_iso(now - window)))
            bumped = conn.execute(
                t.update().where(and_(t.c.source_key == key, t.c.attempts < limit)).values(attempts=t.c.attempts + 1)
            ).rowcount
            if not bumped:
                # No open window yet, or the window is full. INSERT OR IGNORE
                # opens a window only in the first case.
                bumped = conn.execute(
                    t.insert()
                    .prefix_with("OR IGNORE", dialect="sqlite")
                    .values(source_key=key, attempts=1, window_start=to_iso(now))
                ).rowcount
            row = conn.execute(select(t.c.attempts, t.c.window_start).where(t.c.source_key == key)).fetchone()
        current = Window(count=row.attempts, window_start=from_iso(row.window_start))
        return Decision(allowed=bool(bumped), window=current)

    def purge(self, now: datetime, window: timedelta) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_windows.delete().where(_windows.c.window_start <= to_iso(now - window)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class SlidingWindowRateLimiter:
    """Gate for login attempts keyed by source.

    Usage:
        limiter = SlidingWindowRateLimiter(MemoryCounterStore(), max_attempts=5)
        limiter.hit("203.0.113.7")      # raises RateLimited on the 6th call in 15 min
    """

    def __init__(
        self,
        store: CounterStore,
        max_attempts: int = 5,
        window: timedelta = timedelta(minutes=15),
        clock: Clock | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.window = window
        self.clock = clock or SystemClock()

    def hit(self, source: str) -> Window:
        """Count one attempt from source. Raises RateLimited when the window is full."""
        now = self.clock.now()
        decision = self.store.acquire(source, now, self.window, self.max_attempts)
        if not decision.allowed:
            remaining = (decision.window.window_start + self.window - now).total_seconds()
            retry_after = min(max(1, math.ceil(remaining)), math.ceil(self.window.total_seconds()))
            logger.warning("Rate limit exceeded for source %s (retry in %ds)", source, retry_after)
            raise RateLimited(retry_after=retry_after)
        return decision.window

    def purge(self) -> int:
        return self.store.purge(self.clock.now(), self.window)
