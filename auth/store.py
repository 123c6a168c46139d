"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and refresh tokens.

Pattern: Repository + Data Mapper.
SQLCredentialStore is the repository; _row_to_principal / _row_to_token are
the mappers. Services and routes never touch SQL directly.

Two principal kinds, one capability:
  UserStore and AdminStore share every method through SQLCredentialStore and
  differ only in the table they address. Services depend on the
  CredentialStore protocol and look the right store up through
  PrincipalDirectory.for_kind(), so lockout, verification and refresh logic
  exist exactly once.

Atomicity:
  Every mutation that can race across concurrent logins, refreshes or logouts
  of the same principal is a single SQL statement or a single transaction:
    - failed attempts:  UPDATE ... SET failed_attempts = failed_attempts + 1
    - lock:             UPDATE ... WHERE lock_until IS NULL OR lock_until <= now
    - rotation:         DELETE old (must exist, unexpired) + INSERT new in one
                        transaction; zero rows deleted aborts the rotation.
  No read-modify-write happens in Python.

Security:
  All queries use bound parameters. Refresh tokens are stored as
  HMAC-SHA256 hashes (see auth/tokens.py: hash_refresh_token).

Timestamps are ISO-8601 UTC strings with fixed microsecond precision so that
string comparison in SQL matches chronological order.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    null,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ROLES_BY_KIND, Principal, PrincipalKind, RefreshTokenRecord, Role
from core.config import get_settings

logger = logging.getLogger("tokengate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()


def _principal_table(name: str) -> Table:
    return Table(
        name,
        _metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("email", String(255), nullable=False, unique=True),
        Column("name", String(100), nullable=False, server_default=""),
        Column("hashed_password", Text),
        Column("role", String(30), nullable=False),
        Column("is_active", Integer, nullable=False, server_default="1"),
        Column("failed_attempts", Integer, nullable=False, server_default="0"),
        Column("lock_until", String(40)),  # NULL = never locked / lock cleared
        Column("last_login", String(40)),
        Column("created_at", String(40), nullable=False),
    )


_users = _principal_table("users")
_admins = _principal_table("admins")

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Index("ix_refresh_tokens_principal", "principal_kind", "principal_id"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class AuthDatabase:
    """Owns the engine shared by UserStore, AdminStore and SQLCounterStore.

    Usage:
        db = AuthDatabase("sqlite:///auth.db")
        users = UserStore(db)
        db.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.url = db_url
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    """What the auth core needs from a principal store. Both kinds implement it."""

    kind: PrincipalKind

    def create(self, principal: Principal) -> int: ...

    def get_by_id(self, principal_id: int) -> Principal | None: ...

    def get_by_email(self, email: str) -> Principal | None: ...

    def list_principals(self) -> list[Principal]: ...

    def update(self, principal_id: int, **fields) -> bool: ...

    def increment_failed_attempts(self, principal_id: int, now: datetime) -> int: ...

    def lock(self, principal_id: int, until: datetime, now: datetime) -> bool: ...

    def reset_login_state(self, principal_id: int, now: datetime) -> None: ...

    def unlock(self, principal_id: int) -> bool: ...

    def push_refresh_token(self, principal_id: int, record: RefreshTokenRecord, now: datetime) -> int: ...

    def rotate_refresh_token(
        self, principal_id: int, old_hash: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool: ...

    def list_refresh_tokens(self, principal_id: int) -> list[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, principal_id: int, token_hash: str) -> bool: ...

    def revoke_all_refresh_tokens(self, principal_id: int) -> int: ...

    def purge_expired_refresh_tokens(self, now: datetime) -> int: ...


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLCredentialStore:
    """Repository for one principal kind plus its refresh tokens."""

    kind: PrincipalKind
    _table: Table

    # Fields update() accepts. Lockout and token columns have dedicated
    # atomic methods and are never written through update().
    _UPDATABLE: frozenset[str] = frozenset({"name", "role", "is_active", "hashed_password"})

    def __init__(self, db: AuthDatabase) -> None:
        self.db = db
        self.engine = db.engine

    # ------------------------------------------------------------------
    # Principal queries
    # ------------------------------------------------------------------

    def _check_role(self, role: Role | str) -> Role:
        role = Role(role)
        if role not in ROLES_BY_KIND[self.kind]:
            raise ValueError(f"Role {role.value!r} is not valid for {self.kind.value} principals")
        return role

    def create(self, principal: Principal) -> int:
        """Insert a new principal and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists and
        ValueError if the role does not belong to this principal kind.
        """
        role = self._check_role(principal.role)
        with self.engine.connect() as conn:
            result = conn.execute(
                self._table.insert().values(
                    email=principal.email.strip().lower(),
                    name=principal.name,
                    hashed_password=principal.hashed_password,
                    role=role.value,
                    is_active=1 if principal.is_active else 0,
                    failed_attempts=0,
                    created_at=to_iso(principal.created_at or _now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, principal_id: int) -> Principal | None:
        """Look up a principal by primary key, refresh tokens included."""
        with self.engine.connect() as conn:
            row = conn.execute(self._table.select().where(self._table.c.id == principal_id)).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, row)

    def get_by_email(self, email: str) -> Principal | None:
        """Look up a principal by email (case-insensitive; emails are stored lower-case)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                self._table.select().where(self._table.c.email == email.strip().lower())
            ).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, row)

    def list_principals(self) -> list[Principal]:
        """Return all principals of this kind ordered by email, without token lists."""
        with self.engine.connect() as conn:
            rows = conn.execute(self._table.select().order_by(self._table.c.email)).fetchall()
        return [_row_to_principal(r, self.kind) for r in rows]

    def update(self, principal_id: int, **fields) -> bool:
        """Update mutable profile fields. Returns False if principal_id was not found."""
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown or protected fields: {sorted(unknown)!r}")
        if not fields:
            return False
        if "role" in fields:
            fields["role"] = self._check_role(fields["role"]).value
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(self._table.update().where(self._table.c.id == principal_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def _hydrate(self, conn, row) -> Principal:
        principal = _row_to_principal(row, self.kind)
        principal.refresh_tokens = self._tokens_for(conn, row.id)
        return principal

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_failed_attempts(self, principal_id: int, now: datetime) -> int:
        """Atomically count one failed login and return the new count.

        A lock that has already expired restarts the count at 1 and is
        cleared in the same statement.
        """
        t = self._table
        now_iso = to_iso(now)
        lock_expired = and_(t.c.lock_until.is_not(None), t.c.lock_until <= now_iso)
        with self.engine.begin() as conn:
            conn.execute(
                t.update()
                .where(t.c.id == principal_id)
                .values(
                    failed_attempts=case((lock_expired, 1), else_=t.c.failed_attempts + 1),
                    lock_until=case((lock_expired, null()), else_=t.c.lock_until),
                )
            )
            count = conn.execute(select(t.c.failed_attempts).where(t.c.id == principal_id)).scalar()
        return count or 0

    def lock(self, principal_id: int, until: datetime, now: datetime) -> bool:
        """Set lock_until unless a lock is already in force. Returns True if a lock was set."""
        t = self._table
        now_iso = to_iso(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                t.update()
                .where(and_(t.c.id == principal_id, or_(t.c.lock_until.is_(None), t.c.lock_until <= now_iso)))
                .values(lock_until=to_iso(until))
            )
        return result.rowcount > 0

    def reset_login_state(self, principal_id: int, now: datetime) -> None:
        """Clear failed attempts and lock, stamp last_login. Called on every successful login."""
        with self.engine.begin() as conn:
            conn.execute(
                self._table.update()
                .where(self._table.c.id == principal_id)
                .values(failed_attempts=0, lock_until=null(), last_login=to_iso(now))
            )

    def unlock(self, principal_id: int) -> bool:
        """Clear lockout state without recording a login (administrative unlock)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                self._table.update()
                .where(self._table.c.id == principal_id)
                .values(failed_attempts=0, lock_until=null())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def _owned(self, principal_id: int):
        rt = _refresh_tokens
        return and_(rt.c.principal_kind == self.kind.value, rt.c.principal_id == principal_id)

    def _tokens_for(self, conn, principal_id: int) -> list[RefreshTokenRecord]:
        rows = conn.execute(
            _refresh_tokens.select().where(self._owned(principal_id)).order_by(_refresh_tokens.c.id)
        ).fetchall()
        return [_row_to_token(r) for r in rows]

    def push_refresh_token(self, principal_id: int, record: RefreshTokenRecord, now: datetime) -> int:
        """Append a refresh token; expired entries of the same principal are purged first."""
        rt = _refresh_tokens
        with self.engine.begin() as conn:
            conn.execute(rt.delete().where(and_(self._owned(principal_id), rt.c.expires_at <= to_iso(now))))
            result = conn.execute(
                rt.insert().values(
                    principal_kind=self.kind.value,
                    principal_id=principal_id,
                    token_hash=record.token_hash,
                    issued_at=to_iso(record.issued_at),
                    expires_at=to_iso(record.expires_at),
                )
            )
            return result.inserted_primary_key[0]

    def rotate_refresh_token(
        self, principal_id: int, old_hash: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Consume old_hash and append new_record in one transaction.

        Returns False (and writes nothing) when old_hash is not a live token
        of this principal: already rotated, revoked, or expired.
        """
        rt = _refresh_tokens
        with self.engine.begin() as conn:
            consumed = conn.execute(
                rt.delete().where(
                    and_(self._owned(principal_id), rt.c.token_hash == old_hash, rt.c.expires_at > to_iso(now))
                )
            )
            if consumed.rowcount != 1:
                return False
            conn.execute(
                rt.insert().values(
                    principal_kind=self.kind.value,
                    principal_id=principal_id,
                    token_hash=new_record.token_hash,
                    issued_at=to_iso(new_record.issued_at),
                    expires_at=to_iso(new_record.expires_at),
                )
            )
        return True

    def list_refresh_tokens(self, principal_id: int) -> list[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            return self._tokens_for(conn, principal_id)

    def revoke_refresh_token(self, principal_id: int, token_hash: str) -> bool:
        """Remove one refresh token. Ownership is part of the WHERE clause."""
        rt = _refresh_tokens
        with self.engine.begin() as conn:
            result = conn.execute(rt.delete().where(and_(self._owned(principal_id), rt.c.token_hash == token_hash)))
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, principal_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(self._owned(principal_id)))
        return result.rowcount

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        """Delete expired refresh tokens of every principal of this kind. Returns rows removed."""
        rt = _refresh_tokens
        with self.engine.begin() as conn:
            result = conn.execute(
                rt.delete().where(and_(rt.c.principal_kind == self.kind.value, rt.c.expires_at <= to_iso(now)))
            )
        return result.rowcount


class UserStore(SQLCredentialStore):
    kind = PrincipalKind.user
    _table = _users


class AdminStore(SQLCredentialStore):
    kind = PrincipalKind.admin
    _table = _admins


class PrincipalDirectory:
    """Maps a principal kind to the store that owns it.

    Usage:
        directory = PrincipalDirectory([UserStore(db), AdminStore(db)])
        store = directory.for_kind(PrincipalKind.admin)
    """

    def __init__(self, stores: Iterable[CredentialStore]) -> None:
        self._stores: dict[PrincipalKind, CredentialStore] = {s.kind: s for s in stores}

    def for_kind(self, kind: PrincipalKind | str) -> CredentialStore:
        try:
            return self._stores[PrincipalKind(kind)]
        except (KeyError, ValueError) as exc:
            raise LookupError(f"No credential store registered for kind {kind!r}") from exc

    def get(self, kind: PrincipalKind | str, principal_id: int) -> Principal | None:
        return self.for_kind(kind).get_by_id(principal_id)

    def __iter__(self) -> Iterator[CredentialStore]:
        return iter(self._stores.values())


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row, kind: PrincipalKind) -> Principal:
    return Principal(
        id=row.id,
        kind=kind,
        email=row.email,
        name=row.name or "",
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_active=bool(row.is_active),
        failed_attempts=row.failed_attempts or 0,
        lock_until=from_iso(row.lock_until),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
    )


def _row_to_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token_hash=row.token_hash,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
    )
