"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version and database fields
  - No authentication required
  - degraded status when the database does not answer
  - /docs is behind authentication
"""

from __future__ import annotations

from api.main import VERSION
from conftest import bearer, login


def test_health_returns_ok(api_client):
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": VERSION, "database": "ok"}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_degraded_when_database_down(api_client, db, monkeypatch):
    monkeypatch.setattr(db, "ping", lambda: False)
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "degraded"
    assert resp.json()["database"] == "unavailable"


def test_docs_require_auth(api_client, seed_principal):
    assert api_client.get("/docs").status_code == 401
    seed_principal("a@x.com")
    token = login(api_client, "a@x.com").json()["access_token"]
    assert api_client.get("/docs", headers=bearer(token)).status_code == 200
