"""Unit tests for auth/lockout.py -- per-principal failed-login tracking.

Covers:
- threshold failures lock the principal for the configured duration
- check() raises AccountLocked with a retry_after while the lock is in force
- after the lock expires the principal is evaluated normally and a failure
  restarts the count at 1
- a success resets the counter
- concurrent wrong-password logins on a file database are all counted and
  exactly one of the failures past the threshold sets the lock
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from auth.errors import AccountLocked, CredentialsInvalid
from auth.lockout import LockoutTracker
from auth.models import PrincipalKind
from auth.service import build_auth_service
from auth.store import AuthDatabase
from conftest import PASSWORD, make_settings


@pytest.fixture
def tracker(clock) -> LockoutTracker:
    return LockoutTracker(threshold=5, lock_duration=timedelta(hours=2), clock=clock)


@pytest.fixture
def store(service):
    return service.directory.for_kind(PrincipalKind.user)


def _fail(tracker, store, principal_id, times):
    state = None
    for _ in range(times):
        state = tracker.record_failure(store, store.get_by_id(principal_id))
    return state


def test_four_failures_do_not_lock(tracker, store, seed_principal) -> None:
    p = seed_principal("a@x.com")
    state = _fail(tracker, store, p.id, 4)
    assert state.locked is False
    assert state.failed_attempts == 4
    tracker.check(store.get_by_id(p.id))


def test_fifth_failure_locks_for_two_hours(tracker, store, seed_principal, clock) -> None:
    p = seed_principal("a@x.com")
    state = _fail(tracker, store, p.id, 5)
    assert state.locked is True
    assert state.retry_after == 7200

    locked = store.get_by_id(p.id)
    assert locked.lock_until == clock.now() + timedelta(hours=2)
    with pytest.raises(AccountLocked) as exc_info:
        tracker.check(locked)
    assert exc_info.value.retry_after == 7200


def test_retry_after_shrinks_while_locked(tracker, store, seed_principal, clock) -> None:
    p = seed_principal("a@x.com")
    _fail(tracker, store, p.id, 5)
    clock.advance(hours=1, minutes=30)
    state = tracker.state(store.get_by_id(p.id))
    assert state.locked is True
    assert state.retry_after == 1800


def test_lock_expires_and_count_restarts(tracker, store, seed_principal, clock) -> None:
    p = seed_principal("a@x.com")
    _fail(tracker, store, p.id, 5)
    clock.advance(hours=2)

    expired = store.get_by_id(p.id)
    tracker.check(expired)
    state = tracker.record_failure(store, expired)
    assert state.locked is False
    assert state.failed_attempts == 1


def test_success_resets(tracker, store, seed_principal) -> None:
    p = seed_principal("a@x.com")
    _fail(tracker, store, p.id, 3)
    tracker.record_success(store, store.get_by_id(p.id))
    assert store.get_by_id(p.id).failed_attempts == 0
    state = _fail(tracker, store, p.id, 1)
    assert state.failed_attempts == 1


def test_threshold_must_be_positive(clock) -> None:
    with pytest.raises(ValueError):
        LockoutTracker(threshold=0, clock=clock)


def test_concurrent_wrong_passwords_are_all_counted(tmp_path, clock) -> None:
    db = AuthDatabase(f"sqlite:///{tmp_path / 'auth.db'}")
    try:
        service = build_auth_service(make_settings(lockout_threshold=8), db, clock)
        p = service.create_principal("user", "a@x.com", PASSWORD)

        def attempt(i):
            try:
                return service.login("a@x.com", "wrong-password", source=f"198.51.100.{i}")
            except CredentialsInvalid as exc:
                return exc

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))
        after = service.directory.for_kind(PrincipalKind.user).get_by_id(p.id)
    finally:
        db.close()

    assert all(isinstance(o, CredentialsInvalid) for o in outcomes)
    assert after.failed_attempts == 8
    assert after.lock_until == clock.now() + timedelta(hours=2)


def test_concurrent_failures_past_threshold_set_one_lock(tmp_path, clock, caplog) -> None:
    db = AuthDatabase(f"sqlite:///{tmp_path / 'auth.db'}")
    try:
        service = build_auth_service(make_settings(), db, clock)
        p = service.create_principal("user", "a@x.com", PASSWORD)
        store = service.directory.for_kind(PrincipalKind.user)
        tracker = LockoutTracker(threshold=3, lock_duration=timedelta(hours=2), clock=clock)

        with caplog.at_level(logging.WARNING, logger="tokengate.lockout"):
            with ThreadPoolExecutor(max_workers=8) as pool:
                states = list(pool.map(lambda _: tracker.record_failure(store, p), range(8)))
        after = store.get_by_id(p.id)
    finally:
        db.close()

    assert sorted(s.failed_attempts for s in states) == list(range(1, 9))
    assert sum(s.locked for s in states) == 6
    assert len([r for r in caplog.records if r.getMessage().startswith("Locked user principal")]) == 1
    assert after.failed_attempts == 8
    assert after.is_locked(clock.now())
