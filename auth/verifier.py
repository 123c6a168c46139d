"""
auth/verifier.py -- Per-request access-token verification.

Steps, cheapest first:
  1. Signature, token type and expiry (no store access).
  2. Load the principal from the store that owns its kind.
  3. Reject inactive or currently locked principals even though the token is
     still valid -- deactivation and lockout take effect on the next request,
     not when the token expires.

The same algorithm serves users and admins; the token's "kind" claim selects
the store.
"""

from __future__ import annotations

import logging

from auth.errors import AccountInactive, AccountLocked, TokenInvalid, TokenMissing
from auth.models import Principal
from auth.store import PrincipalDirectory
from auth.tokens import TokenIssuer

logger = logging.getLogger("tokengate.auth")


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AccessVerifier:
    def __init__(self, issuer: TokenIssuer, directory: PrincipalDirectory) -> None:
        self.issuer = issuer
        self.directory = directory

    def verify(self, token: str | None) -> Principal:
        """Return the principal behind a valid access token, or raise an AuthError."""
        if not token:
            raise TokenMissing("Access token required.")
        claims = self.issuer.decode_access(token)
        principal = self.directory.get(claims.kind, claims.principal_id)
        if principal is None:
            logger.info("Access token for unknown %s principal %s", claims.kind.value, claims.principal_id)
            raise TokenInvalid()
        if not principal.is_active:
            raise AccountInactive()
        now = self.issuer.clock.now()
        if principal.is_locked(now):
            raise AccountLocked(retry_after=principal.lock_retry_after(now))
        return principal
