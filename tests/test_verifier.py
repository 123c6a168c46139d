"""Unit tests for auth/verifier.py -- per-request access-token verification.

Covers:
- Bearer header parsing
- valid token resolves to the principal from the store named by the "kind" claim
- missing / expired / invalid tokens map to distinct errors
- deactivation and lockout take effect before the token expires
"""

from datetime import timedelta

import pytest

from auth.errors import AccountInactive, AccountLocked, TokenExpired, TokenInvalid, TokenMissing
from auth.models import PrincipalKind, Role
from auth.verifier import bearer_token


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer   abc ", "abc"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ],
)
def test_bearer_token(header, expected) -> None:
    assert bearer_token(header) == expected


def test_valid_token(service, seed_principal) -> None:
    admin = seed_principal("root@x.com", kind="admin", role=Role.super_admin)
    token, _ = service.issuer.mint_access(admin)
    principal = service.verifier.verify(token)
    assert principal.id == admin.id
    assert principal.kind == PrincipalKind.admin
    assert principal.to_current().role == Role.super_admin


def test_same_id_in_other_store_is_not_confused(service, seed_principal) -> None:
    user = seed_principal("a@x.com")
    admin = seed_principal("root@x.com", kind="admin")
    assert user.id == admin.id == 1
    token, _ = service.issuer.mint_access(user)
    assert service.verifier.verify(token).kind == PrincipalKind.user


def test_missing_token(service) -> None:
    with pytest.raises(TokenMissing):
        service.verifier.verify(None)


def test_expired_token(service, seed_principal, clock) -> None:
    token, _ = service.issuer.mint_access(seed_principal("a@x.com"))
    clock.advance(minutes=15)
    with pytest.raises(TokenExpired) as exc_info:
        service.verifier.verify(token)
    assert exc_info.value.recovery.value == "refresh"


def test_token_for_deleted_principal(service, seed_principal, db) -> None:
    p = seed_principal("a@x.com")
    token, _ = service.issuer.mint_access(p)
    with db.engine.begin() as conn:
        conn.exec_driver_sql("DELETE FROM users WHERE id = ?", (p.id,))
    with pytest.raises(TokenInvalid):
        service.verifier.verify(token)


def test_deactivated_principal_rejected_immediately(service, seed_principal) -> None:
    p = seed_principal("a@x.com")
    token, _ = service.issuer.mint_access(p)
    service.set_active("user", p.id, False)
    with pytest.raises(AccountInactive):
        service.verifier.verify(token)


def test_locked_principal_rejected_with_retry_after(service, seed_principal, clock) -> None:
    p = seed_principal("a@x.com")
    token, _ = service.issuer.mint_access(p)
    store = service.directory.for_kind("user")
    store.lock(p.id, clock.now() + timedelta(hours=2), clock.now())
    clock.advance(minutes=1)
    with pytest.raises(AccountLocked) as exc_info:
        service.verifier.verify(token)
    assert exc_info.value.retry_after == 7140


def test_locked_retry_after_rounds_up_like_login(service, seed_principal, clock) -> None:
    p = seed_principal("a@x.com")
    token, _ = service.issuer.mint_access(p)
    store = service.directory.for_kind("user")
    store.lock(p.id, clock.now() + timedelta(hours=2), clock.now())
    clock.advance(minutes=1, milliseconds=500)

    with pytest.raises(AccountLocked) as on_request:
        service.verifier.verify(token)
    with pytest.raises(AccountLocked) as on_login:
        service.lockout.check(store.get_by_id(p.id))
    assert on_request.value.retry_after == on_login.value.retry_after == 7140
