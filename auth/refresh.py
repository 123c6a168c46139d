"""
auth/refresh.py -- Refresh-token rotation and revocation.

refresh(token):
  1. Verify signature, type and expiry.             -> TokenInvalidOrExpired
  2. Load the principal; must exist and be active.   -> AccountInactive
  3. In ONE store transaction, delete the presented token (it must be a live
     entry of this principal) and insert a freshly minted one.
                                                     -> TokenNotRecognized
  4. Mint a new access token.

Step 3 doubles as replay protection: a token that was already rotated or
revoked deletes zero rows, and two concurrent refreshes with the same token
cannot both succeed. A refresh failure is terminal for the caller's session;
clients must log in again rather than retry.
"""

from __future__ import annotations

import logging

from auth.errors import (
    AccountInactive,
    TokenExpired,
    TokenInvalid,
    TokenInvalidOrExpired,
    TokenMissing,
    TokenNotRecognized,
)
from auth.models import Principal
from auth.store import PrincipalDirectory
from auth.tokens import TokenIssuer, TokenPair

logger = logging.getLogger("tokengate.refresh")


class RefreshCoordinator:
    def __init__(self, issuer: TokenIssuer, directory: PrincipalDirectory) -> None:
        self.issuer = issuer
        self.directory = directory

    def refresh(self, refresh_token: str | None) -> TokenPair:
        if not refresh_token:
            raise TokenMissing("Refresh token required.")
        try:
            claims = self.issuer.decode_refresh(refresh_token)
        except (TokenInvalid, TokenExpired) as exc:
            raise TokenInvalidOrExpired() from exc

        store = self.directory.for_kind(claims.kind)
        principal = store.get_by_id(claims.principal_id)
        if principal is None or not principal.is_active:
            logger.info(
                "Refresh refused for inactive or missing %s principal %s", claims.kind.value, claims.principal_id
            )
            raise AccountInactive()

        new_refresh, record = self.issuer.mint_refresh(principal)
        rotated = store.rotate_refresh_token(
            principal.id,
            self.issuer.hash_refresh_token(refresh_token),
            record,
            self.issuer.clock.now(),
        )
        if not rotated:
            logger.warning(
                "Refresh token replay or revoked token for %s principal %s (jti=%s)",
                principal.kind.value,
                principal.id,
                claims.jti,
            )
            raise TokenNotRecognized()

        access_token, access_expires_at = self.issuer.mint_access(principal)
        logger.info("Rotated refresh token for %s principal %s", principal.kind.value, principal.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            access_expires_at=access_expires_at,
            refresh_expires_at=record.expires_at,
        )

    def revoke(self, principal: Principal, refresh_token: str | None = None) -> int:
        """Revoke one refresh token, or every refresh token of the principal when none is given.

        Returns the number of tokens removed.
        """
        store = self.directory.for_kind(principal.kind)
        if refresh_token:
            removed = int(store.revoke_refresh_token(principal.id, self.issuer.hash_refresh_token(refresh_token)))
        else:
            removed = store.revoke_all_refresh_tokens(principal.id)
        logger.info(
            "Revoked %d refresh token(s) for %s principal %s%s",
            removed,
            principal.kind.value,
            principal.id,
            "" if refresh_token else " (all devices)",
        )
        return removed
