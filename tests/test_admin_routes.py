"""
tests/test_admin_routes.py -- Integration tests for /api/v1/admin/*.

Covers:
  - end-user tokens are refused on every admin route (403 role_denied)
  - permission matrix enforcement: admin:create is super-admin only
  - listing admins and users, creating admins, duplicate email -> 409
  - PATCH role / is_active, self-deactivation guard, 404, invalid_role
  - deactivation signs the target out (refresh fails, access token refused)
  - unlock is restricted to super-admins
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD, bearer, login

ADMIN = "/api/v1/admin"


@pytest.fixture
def tokens_for(api_client: TestClient, seed_principal):
    """tokens_for(email, kind, role) -> login payload for a freshly seeded principal."""

    def _tokens(email: str, kind: str = "admin", role: str | None = None) -> dict:
        seed_principal(email, kind=kind, role=role)
        resp = login(api_client, email, audience=kind)
        assert resp.status_code == 200
        return resp.json()

    return _tokens


@pytest.fixture
def root(tokens_for) -> dict:
    return tokens_for("root@x.com", role="super-admin")


class TestAccess:
    def test_user_token_is_refused(self, api_client: TestClient, tokens_for) -> None:
        student = tokens_for("s@x.com", kind="user")
        resp = api_client.get(f"{ADMIN}/users", headers=bearer(student["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "role_denied"

    def test_no_token(self, api_client: TestClient) -> None:
        resp = api_client.get(f"{ADMIN}/admins")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_missing"

    def test_moderator_cannot_list_admins(self, api_client: TestClient, tokens_for) -> None:
        mod = tokens_for("mod@x.com", role="moderator")
        resp = api_client.get(f"{ADMIN}/admins", headers=bearer(mod["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "permission_denied"
        # users:read is granted
        assert api_client.get(f"{ADMIN}/users", headers=bearer(mod["access_token"])).status_code == 200


class TestAdmins:
    def test_list_admins(self, api_client: TestClient, root) -> None:
        resp = api_client.get(f"{ADMIN}/admins", headers=bearer(root["access_token"]))
        assert resp.status_code == 200
        [entry] = resp.json()
        assert entry["email"] == "root@x.com"
        assert entry["failed_attempts"] == 0
        assert entry["locked_until"] is None

    def test_create_admin(self, api_client: TestClient, root) -> None:
        resp = api_client.post(
            f"{ADMIN}/admins",
            json={"name": "Ops", "email": "Ops@X.com", "password": PASSWORD, "role": "moderator"},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 201
        assert resp.json()["email"] == "ops@x.com"
        assert resp.json()["kind"] == "admin"
        assert login(api_client, "ops@x.com", audience="admin").status_code == 200

    def test_create_duplicate_admin(self, api_client: TestClient, root) -> None:
        resp = api_client.post(
            f"{ADMIN}/admins",
            json={"email": "root@x.com", "password": PASSWORD},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_plain_admin_cannot_create_admins(self, api_client: TestClient, tokens_for) -> None:
        admin = tokens_for("admin@x.com", role="admin")
        resp = api_client.post(
            f"{ADMIN}/admins",
            json={"email": "new@x.com", "password": PASSWORD},
            headers=bearer(admin["access_token"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "permission_denied"


class TestPrincipalPatch:
    def test_change_user_role(self, api_client: TestClient, root, seed_principal) -> None:
        user = seed_principal("s@x.com")
        resp = api_client.patch(
            f"{ADMIN}/principals/user/{user.id}",
            json={"role": "instructor"},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "instructor"

    def test_role_must_fit_kind(self, api_client: TestClient, root, seed_principal) -> None:
        user = seed_principal("s@x.com")
        resp = api_client.patch(
            f"{ADMIN}/principals/user/{user.id}",
            json={"role": "super-admin"},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_role"

    def test_empty_patch(self, api_client: TestClient, root, seed_principal) -> None:
        user = seed_principal("s@x.com")
        resp = api_client.patch(f"{ADMIN}/principals/user/{user.id}", json={}, headers=bearer(root["access_token"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_missing_principal(self, api_client: TestClient, root) -> None:
        resp = api_client.patch(
            f"{ADMIN}/principals/user/999",
            json={"is_active": False},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_self_deactivation_blocked(self, api_client: TestClient, root) -> None:
        me = root["principal"]
        resp = api_client.patch(
            f"{ADMIN}/principals/admin/{me['id']}",
            json={"is_active": False},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

    def test_plain_admin_cannot_update_admins(self, api_client: TestClient, root, tokens_for) -> None:
        admin = tokens_for("admin@x.com", role="admin")
        resp = api_client.patch(
            f"{ADMIN}/principals/admin/{root['principal']['id']}",
            json={"is_active": False},
            headers=bearer(admin["access_token"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "permission_denied"

    def test_deactivation_signs_target_out(self, api_client: TestClient, root, tokens_for) -> None:
        student = tokens_for("s@x.com", kind="user")
        resp = api_client.patch(
            f"{ADMIN}/principals/user/{student['principal']['id']}",
            json={"is_active": False},
            headers=bearer(root["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        me = api_client.get("/api/v1/auth/me", headers=bearer(student["access_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "account_inactive"
        again = api_client.post("/api/v1/auth/refresh", json={"refresh_token": student["refresh_token"]})
        assert again.json()["error"]["code"] == "account_inactive"


class TestUnlock:
    def _lock(self, client: TestClient, email: str) -> None:
        for _ in range(5):
            login(client, email, "wrong")

    def test_super_admin_unlocks(self, make_client, root, seed_principal) -> None:
        # a second client on the same app, with room for the failed attempts
        client = make_client(login_rate_limit_attempts=50)
        user = seed_principal("s@x.com")
        self._lock(client, "s@x.com")
        assert login(client, "s@x.com").json()["error"]["code"] == "account_locked"

        resp = client.post(f"{ADMIN}/principals/user/{user.id}/unlock", headers=bearer(root["access_token"]))
        assert resp.status_code == 200
        assert resp.json() == {"unlocked": True}
        assert login(client, "s@x.com").status_code == 200

    def test_unlock_requires_super_admin(self, api_client: TestClient, tokens_for, seed_principal) -> None:
        admin = tokens_for("admin@x.com", role="admin")
        user = seed_principal("s@x.com")
        resp = api_client.post(f"{ADMIN}/principals/user/{user.id}/unlock", headers=bearer(admin["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "role_denied"

    def test_unlock_missing(self, api_client: TestClient, root) -> None:
        resp = api_client.post(f"{ADMIN}/principals/user/999/unlock", headers=bearer(root["access_token"]))
        assert resp.status_code == 404
