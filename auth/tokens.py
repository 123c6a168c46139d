"""
auth/tokens.py -- JWT issuance and decoding, password hashing, refresh-token hashing.

Security design decisions:
  JWT: python-jose with HS256. Two token types share one format and are kept
       apart by the "typ" claim and (optionally) by separate secrets:
         access   {sub, kind, role, typ, iat, exp}         TTL 15 min, stateless
         refresh  {sub, kind, typ, jti, iat, exp}          TTL 7 days, persisted
       jti makes every refresh token unique even when two are minted for the
       same principal within one second.

       Expiry is checked against the injected Clock rather than by jose, so
       every time-based decision in the service reads the same "now".

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in AuthService.login() so response time does not reveal
       whether an email exists [C1].

  Refresh tokens at rest: HMAC-SHA256(refresh secret, raw token). Lookup is
       O(1) by hash and a leaked database does not yield usable tokens.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.models import Principal, PrincipalKind, RefreshTokenRecord, Role
from core.clock import Clock, SystemClock
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("tokengate.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates at 72 bytes; the API layer caps passwords at 128 chars.
    """
    rounds = rounds or get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database; treat as a mismatch.
        logger.warning("Stored password hash could not be parsed")
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("tokengate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessClaims:
    principal_id: int
    kind: PrincipalKind
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    principal_id: int
    kind: PrincipalKind
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and decodes access/refresh tokens.

    Usage:
        issuer = TokenIssuer(get_settings(), SystemClock())
        pair = issuer.issue(principal, store)          # persists the refresh token
        claims = issuer.decode_access(pair.access_token)
    """

    def __init__(self, settings: Settings | None = None, clock: Clock | None = None) -> None:
        settings = settings or get_settings()
        self._secret = settings.secret_key
        self._refresh_secret = settings.refresh_secret_key or settings.secret_key
        self.access_ttl = timedelta(seconds=settings.access_token_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint_access(self, principal: Principal) -> tuple[str, datetime]:
        """Return (token, expires_at) for a signed access token. Nothing is persisted."""
        now = self.clock.now()
        expires_at = now + self.access_ttl
        payload = {
            "sub": str(principal.id),
            "kind": PrincipalKind(principal.kind).value,
            "role": Role(principal.role).value,
            "typ": ACCESS,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM), expires_at

    def mint_refresh(self, principal: Principal) -> tuple[str, RefreshTokenRecord]:
        """Return (token, record) for a signed refresh token. The caller persists the record."""
        now = self.clock.now()
        expires_at = now + self.refresh_ttl
        payload = {
            "sub": str(principal.id),
            "kind": PrincipalKind(principal.kind).value,
            "typ": REFRESH,
            "jti": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._refresh_secret, algorithm=_ALGORITHM)
        record = RefreshTokenRecord(token_hash=self.hash_refresh_token(token), issued_at=now, expires_at=expires_at)
        return token, record

    def issue(self, principal: Principal, store: CredentialStore) -> TokenPair:
        """Mint an access/refresh pair and append the refresh token to the principal's list."""
        access_token, access_expires_at = self.mint_access(principal)
        refresh_token, record = self.mint_refresh(principal)
        store.push_refresh_token(principal.id, record, self.clock.now())
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=record.expires_at,
        )

    def hash_refresh_token(self, token: str) -> str:
        """Return HMAC-SHA256(refresh secret, token) as hex -- the stored form of a refresh token."""
        return hmac.new(self._refresh_secret.encode(), token.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode(self, token: str, secret: str, expected_typ: str) -> dict:
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError as exc:
            raise TokenInvalid() from exc
        if payload.get("typ") != expected_typ:
            raise TokenInvalid()
        try:
            exp = int(payload["exp"])
            int(payload["sub"])
            PrincipalKind(payload["kind"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if exp <= self.clock.now().timestamp():
            raise TokenExpired()
        return payload

    def decode_access(self, token: str) -> AccessClaims:
        """Verify signature, type and expiry. Raises TokenInvalid or TokenExpired."""
        payload = self._decode(token, self._secret, ACCESS)
        try:
            role = Role(payload["role"])
        except (KeyError, ValueError) as exc:
            raise TokenInvalid() from exc
        return AccessClaims(
            principal_id=int(payload["sub"]),
            kind=PrincipalKind(payload["kind"]),
            role=role,
            issued_at=_from_ts(payload.get("iat")),
            expires_at=_from_ts(payload["exp"]),
        )

    def decode_refresh(self, token: str) -> RefreshClaims:
        """Verify signature, type and expiry of a refresh token. Store membership is checked elsewhere."""
        payload = self._decode(token, self._refresh_secret, REFRESH)
        jti = payload.get("jti")
        if not isinstance(jti, str) or not jti:
            raise TokenInvalid()
        return RefreshClaims(
            principal_id=int(payload["sub"]),
            kind=PrincipalKind(payload["kind"]),
            jti=jti,
            issued_at=_from_ts(payload.get("iat")),
            expires_at=_from_ts(payload["exp"]),
        )


def _from_ts(value) -> datetime:
    return datetime.fromtimestamp(int(value or 0), tz=timezone.utc)
