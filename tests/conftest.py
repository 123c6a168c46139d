"""
tests/conftest.py -- Shared test fixtures for tokengate unit and integration tests.

This module provides:
  - make_settings(): Settings with fast bcrypt and permissive host/rate limits
  - clock:        ManualClock pinned to 2026-01-01 09:00 UTC
  - db:           isolated named shared-memory SQLite AuthDatabase
  - service:      AuthService wired from make_settings() + db + clock
  - make_client:  factory for a TestClient over the real app with a patched
                  lifespan (settings overrides per test)
  - api_client:   make_client() with default test settings
  - seed_principal / login / bearer helpers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import:
  DEBUG          -- get_settings() auto-generates SECRET_KEY instead of raising
  BCRYPT_ROUNDS  -- the dummy timing hash is computed at import time
  ALLOWED_HOSTS / GLOBAL_RATE_LIMIT -- read when api.main builds its middleware
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')
os.environ.setdefault("GLOBAL_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_auth_state
from auth.models import Principal, PrincipalKind, Role
from auth.service import AuthService, build_auth_service
from auth.store import AuthDatabase
from core.clock import ManualClock
from core.config import Settings

PASSWORD = "secret123"
TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings for tests: fixed secret, cheap bcrypt, no host or global rate restrictions."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "bcrypt_rounds": 4,
        "allowed_hosts": ["*"],
        "global_rate_limit": "10000/minute",
    }
    values.update(overrides)
    return Settings(**values)


def memory_db_url(name: str | None = None) -> str:
    return f"sqlite:///file:tg_{name or uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(settings: Settings, db: AuthDatabase, clock: ManualClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test database and ManualClock into app.state through the same
    init_auth_state() the real lifespan uses. The purge_task is a
    long-sleeping coroutine so shutdown has a real task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_auth_state(app, settings, db, clock)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def db() -> Generator[AuthDatabase, None, None]:
    database = AuthDatabase(memory_db_url())
    yield database
    database.close()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def service(settings: Settings, db: AuthDatabase, clock: ManualClock) -> AuthService:
    return build_auth_service(settings, db, clock)


@pytest.fixture
def seed_principal(service: AuthService) -> Callable[..., Principal]:
    """Create a principal with PASSWORD unless another password is given."""

    def _seed(
        email: str,
        kind: PrincipalKind | str = PrincipalKind.user,
        role: Role | str | None = None,
        password: str = PASSWORD,
        name: str = "",
    ) -> Principal:
        return service.create_principal(kind, email, password, role=role, name=name)

    return _seed


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_client(db: AuthDatabase, clock: ManualClock) -> Generator[Callable[..., TestClient], None, None]:
    """Factory: make_client(**settings_overrides) -> started TestClient.

    All clients made in one test share the test's db and clock.
    """
    clients: list[TestClient] = []

    def _make(**overrides) -> TestClient:
        app.router.lifespan_context = _patch_lifespan(make_settings(**overrides), db, clock)
        client = TestClient(app, raise_server_exceptions=True)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
    limiter.reset()


@pytest.fixture
def api_client(make_client) -> TestClient:
    return make_client()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def login(client: TestClient, email: str, password: str = PASSWORD, audience: str = "user"):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password, "audience": audience})
