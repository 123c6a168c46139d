"""
auth/lockout.py -- Per-principal failed-login tracking.

State machine (per principal):

    Unlocked(count)  --failure, count+1 < threshold-->  Unlocked(count+1)
    Unlocked(count)  --failure, count+1 >= threshold--> Locked(until = now + duration)
    Locked(until)    --any attempt, now < until------> rejected with AccountLocked
    Locked(until)    --attempt, now >= until---------> evaluated normally; a failure
                                                       restarts the count at 1
    any              --success----------------------> Unlocked(0)

There is no unlock job. Expiry is observed lazily on the next attempt.

The counter lives in the credential store and is mutated with atomic SQL
updates, so concurrent failures from several sources are all counted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.errors import AccountLocked
from auth.models import Principal
from auth.store import CredentialStore
from core.clock import Clock, SystemClock

logger = logging.getLogger("tokengate.lockout")


@dataclass(frozen=True)
class LockState:
    locked: bool
    failed_attempts: int
    lock_until: datetime | None
    retry_after: int | None


class LockoutTracker:
    def __init__(
        self,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(hours=2),
        clock: Clock | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.lock_duration = lock_duration
        self.clock = clock or SystemClock()

    def state(self, principal: Principal) -> LockState:
        now = self.clock.now()
        if principal.is_locked(now):
            return LockState(
                locked=True,
                failed_attempts=principal.failed_attempts,
                lock_until=principal.lock_until,
                retry_after=principal.lock_retry_after(now),
            )
        return LockState(
            locked=False, failed_attempts=principal.failed_attempts, lock_until=principal.lock_until, retry_after=None
        )

    def check(self, principal: Principal) -> None:
        """Raise AccountLocked if the principal is inside a lock window."""
        state = self.state(principal)
        if state.locked:
            raise AccountLocked(retry_after=state.retry_after)

    def record_failure(self, store: CredentialStore, principal: Principal) -> LockState:
        """Count one failed attempt; lock the principal when the threshold is reached."""
        now = self.clock.now()
        count = store.increment_failed_attempts(principal.id, now)
        if count >= self.threshold:
            until = now + self.lock_duration
            if store.lock(principal.id, until, now):
                logger.warning(
                    "Locked %s principal %s after %d failed attempts (until %s)",
                    principal.kind.value,
                    principal.id,
                    count,
                    until.isoformat(),
                )
            return LockState(
                locked=True,
                failed_attempts=count,
                lock_until=until,
                retry_after=math.ceil(self.lock_duration.total_seconds()),
            )
        logger.info("Failed login %d/%d for %s principal %s", count, self.threshold, principal.kind.value, principal.id)
        return LockState(locked=False, failed_attempts=count, lock_until=None, retry_after=None)

    def record_success(self, store: CredentialStore, principal: Principal) -> None:
        store.reset_login_state(principal.id, self.clock.now())
