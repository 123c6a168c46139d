"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data containers, minimal logic). Stores and
services do the work.

One Principal type covers both end users and administrative operators. The
`kind` field says which store the record lives in; everything else (lockout,
token verification, refresh rotation) is written once against this shape.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class PrincipalKind(str, Enum):
    user = "user"
    admin = "admin"


class Role(str, Enum):
    student = "student"
    instructor = "instructor"
    admin = "admin"
    super_admin = "super-admin"
    moderator = "moderator"


# Roles each principal kind may hold. "admin" appears in both: a user-side
# admin (platform staff with a learner account) is distinct from an operator
# account in the admins table.
ROLES_BY_KIND: dict[PrincipalKind, frozenset[Role]] = {
    PrincipalKind.user: frozenset({Role.student, Role.instructor, Role.admin}),
    PrincipalKind.admin: frozenset({Role.super_admin, Role.admin, Role.moderator}),
}

DEFAULT_ROLE: dict[PrincipalKind, Role] = {
    PrincipalKind.user: Role.student,
    PrincipalKind.admin: Role.admin,
}


@dataclass
class RefreshTokenRecord:
    """One persisted refresh token.

    token_hash is HMAC-SHA256(refresh secret, raw token). The raw value is
    handed to the client once and never stored.
    """

    token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Principal:
    """An authenticatable identity (user or admin).

    failed_attempts / lock_until hold the lockout state. lock_until in the
    past is equivalent to "not locked"; it is cleared on the next successful
    login rather than by a background job.
    """

    email: str
    role: Role
    kind: PrincipalKind
    name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    failed_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    refresh_tokens: list[RefreshTokenRecord] = field(default_factory=list)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def lock_retry_after(self, now: datetime) -> int | None:
        """Whole seconds until the lock lifts, rounded up; None when not locked."""
        if not self.is_locked(now):
            return None
        return max(1, math.ceil((self.lock_until - now).total_seconds()))

    def to_current(self) -> CurrentPrincipal:
        return CurrentPrincipal(id=self.id, kind=self.kind, role=self.role)


@dataclass(frozen=True)
class CurrentPrincipal:
    """The identity attached to request.state for downstream handlers.

    Business handlers read this value and never touch tokens.
    """

    id: int
    kind: PrincipalKind
    role: Role
