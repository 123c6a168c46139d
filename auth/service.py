"""
auth/service.py -- Login orchestration and principal lifecycle.

AuthService is the one object route handlers and the CLI talk to. It owns no
state of its own: lockout counters and refresh tokens live in the credential
stores, rate-limit windows in the injected counter store. build_auth_service()
wires every collaborator from Settings once, at application startup.

Login control flow:
    rate limiter (per source)  -> RateLimited
    lookup by email            -> CredentialsInvalid (after a dummy bcrypt run [C1])
    lockout gate               -> AccountLocked (even with the right password)
    active flag                -> AccountInactive
    password check             -> CredentialsInvalid (+ failed-attempt count)
    reset counters, issue tokens
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.errors import AccountInactive, CredentialsInvalid, CurrentPasswordInvalid
from auth.lockout import LockoutTracker
from auth.models import DEFAULT_ROLE, Principal, PrincipalKind, Role
from auth.permissions import Authorizer
from auth.ratelimit import CounterStore, MemoryCounterStore, SlidingWindowRateLimiter, SQLCounterStore
from auth.refresh import RefreshCoordinator
from auth.store import AdminStore, AuthDatabase, PrincipalDirectory, UserStore
from auth.tokens import TokenIssuer, TokenPair, burn_password_check, hash_password, verify_password
from auth.verifier import AccessVerifier
from core.clock import Clock, SystemClock
from core.config import Settings

logger = logging.getLogger("tokengate.auth")


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair


class AuthService:
    def __init__(
        self,
        directory: PrincipalDirectory,
        issuer: TokenIssuer,
        lockout: LockoutTracker,
        rate_limiter: SlidingWindowRateLimiter,
        clock: Clock | None = None,
        authorizer: Authorizer | None = None,
    ) -> None:
        self.directory = directory
        self.issuer = issuer
        self.lockout = lockout
        self.rate_limiter = rate_limiter
        self.clock = clock or SystemClock()
        self.authorizer = authorizer or Authorizer()
        self.refresher = RefreshCoordinator(issuer, directory)
        self.verifier = AccessVerifier(issuer, directory)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def login(
        self, email: str, password: str, audience: PrincipalKind | str = PrincipalKind.user, source: str = "unknown"
    ) -> LoginResult:
        """Authenticate email/password against the store for `audience` and issue tokens."""
        self.rate_limiter.hit(source)

        kind = PrincipalKind(audience)
        store = self.directory.for_kind(kind)
        principal = store.get_by_email(email)
        if principal is None or principal.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            burn_password_check(password)
            logger.info("Login failed for unknown %s %s from %s", kind.value, email, source)
            raise CredentialsInvalid()

        self.lockout.check(principal)
        if not principal.is_active:
            logger.info("Login refused for inactive %s principal %s", kind.value, principal.id)
            raise AccountInactive()

        if not verify_password(password, principal.hashed_password):
            self.lockout.record_failure(store, principal)
            raise CredentialsInvalid()

        self.lockout.record_success(store, principal)
        tokens = self.issuer.issue(principal, store)
        logger.info("Login succeeded for %s principal %s from %s", kind.value, principal.id, source)
        return LoginResult(principal=store.get_by_id(principal.id) or principal, tokens=tokens)

    def refresh(self, refresh_token: str | None) -> TokenPair:
        return self.refresher.refresh(refresh_token)

    def logout(self, principal: Principal, refresh_token: str | None = None) -> int:
        return self.refresher.revoke(principal, refresh_token)

    def authenticate(self, access_token: str | None) -> Principal:
        return self.verifier.verify(access_token)

    # ------------------------------------------------------------------
    # Principal lifecycle
    # ------------------------------------------------------------------

    def create_principal(
        self,
        kind: PrincipalKind | str,
        email: str,
        password: str,
        role: Role | str | None = None,
        name: str = "",
    ) -> Principal:
        """Create a user or admin. Raises IntegrityError on duplicate email, ValueError on a foreign role."""
        kind = PrincipalKind(kind)
        store = self.directory.for_kind(kind)
        principal = Principal(
            email=email,
            name=name,
            kind=kind,
            role=Role(role) if role else DEFAULT_ROLE[kind],
            hashed_password=hash_password(password),
            created_at=self.clock.now(),
        )
        principal_id = store.create(principal)
        logger.info("Created %s principal %s (%s)", kind.value, principal_id, principal.role.value)
        return store.get_by_id(principal_id)

    def register(self, email: str, password: str, name: str = "", role: Role | str = Role.student) -> LoginResult:
        """Self-registration for end users; returns a logged-in session."""
        role = Role(role)
        if role not in (Role.student, Role.instructor):
            raise ValueError("Self-registration is limited to student and instructor roles")
        principal = self.create_principal(PrincipalKind.user, email, password, role=role, name=name)
        tokens = self.issuer.issue(principal, self.directory.for_kind(PrincipalKind.user))
        return LoginResult(principal=principal, tokens=tokens)

    def change_password(self, principal: Principal, current_password: str, new_password: str) -> int:
        """Replace the password and revoke every refresh token. Returns the number revoked."""
        if principal.hashed_password is None or not verify_password(current_password, principal.hashed_password):
            raise CurrentPasswordInvalid()
        store = self.directory.for_kind(principal.kind)
        store.update(principal.id, hashed_password=hash_password(new_password))
        return self.refresher.revoke(principal)

    def set_active(self, kind: PrincipalKind | str, principal_id: int, active: bool) -> Principal | None:
        """Soft-delete or reactivate. Deactivation also revokes every refresh token."""
        store = self.directory.for_kind(kind)
        if not store.update(principal_id, is_active=active):
            return None
        if not active:
            revoked = store.revoke_all_refresh_tokens(principal_id)
            logger.info("Deactivated %s principal %s (%d refresh token(s) revoked)", kind, principal_id, revoked)
        return store.get_by_id(principal_id)

    def set_role(self, kind: PrincipalKind | str, principal_id: int, role: Role | str) -> Principal | None:
        store = self.directory.for_kind(kind)
        if not store.update(principal_id, role=role):
            return None
        return store.get_by_id(principal_id)

    def unlock(self, kind: PrincipalKind | str, principal_id: int) -> bool:
        unlocked = self.directory.for_kind(kind).unlock(principal_id)
        if unlocked:
            logger.info("Unlocked %s principal %s", kind, principal_id)
        return unlocked

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        """Drop expired refresh tokens and elapsed rate-limit windows."""
        now = self.clock.now()
        counts = {f"refresh_tokens_{store.kind.value}": store.purge_expired_refresh_tokens(now) for store in self.directory}
        counts["rate_limit_windows"] = self.rate_limiter.purge()
        return counts


def build_counter_store(settings: Settings, db: AuthDatabase) -> CounterStore:
    if settings.rate_limit_backend == "database":
        return SQLCounterStore(db)
    return MemoryCounterStore()


def build_auth_service(settings: Settings, db: AuthDatabase, clock: Clock | None = None) -> AuthService:
    """Wire the auth core from Settings. Called once per process (lifespan / CLI)."""
    clock = clock or SystemClock()
    directory = PrincipalDirectory([UserStore(db), AdminStore(db)])
    issuer = TokenIssuer(settings, clock)
    lockout = LockoutTracker(
        threshold=settings.lockout_threshold,
        lock_duration=timedelta(seconds=settings.lockout_duration_seconds),
        clock=clock,
    )
    rate_limiter = SlidingWindowRateLimiter(
        build_counter_store(settings, db),
        max_attempts=settings.login_rate_limit_attempts,
        window=timedelta(seconds=settings.login_rate_limit_window_seconds),
        clock=clock,
    )
    return AuthService(directory, issuer, lockout, rate_limiter, clock=clock)
