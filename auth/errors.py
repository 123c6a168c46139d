"""
auth/errors.py -- Authentication and authorization error taxonomy.

Every failure the auth core can produce is an AuthError subclass carrying:
  code         stable machine-readable identifier (rendered in the envelope)
  status_code  HTTP status the API layer should use
  retry_after  seconds to wait, only for RateLimited and AccountLocked
  recovery     what the caller can do next:
                 retry    -- fix the input and try again now
                 wait     -- wait retry_after seconds
                 refresh  -- refresh the access token once, then retry
                 relogin  -- drop local credentials and log in again
                 none     -- not recoverable by this caller

The API layer turns these into the standard error envelope in one exception
handler (api/main.py). Services raise, routes do not catch.

Messages for bad credentials are deliberately generic. Lockout has its own
specific message: users are told their account is locked and for how long.
"""

from __future__ import annotations

from enum import Enum


class Recovery(str, Enum):
    retry = "retry"
    wait = "wait"
    refresh = "refresh"
    relogin = "relogin"
    none = "none"


class AuthError(Exception):
    code: str = "auth_error"
    status_code: int = 401
    message: str = "Authentication failed."
    recovery: Recovery = Recovery.relogin

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        self.message = message or self.message
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "detail": None,
            "retry_after": self.retry_after,
            "recovery": self.recovery.value,
        }


class CredentialsInvalid(AuthError):
    code = "bad_credentials"
    message = "Invalid email or password."
    recovery = Recovery.retry


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Account is temporarily locked due to multiple failed login attempts."
    recovery = Recovery.wait


class AccountInactive(AuthError):
    code = "account_inactive"
    message = "Account is deactivated."
    recovery = Recovery.none


class TokenMissing(AuthError):
    code = "token_missing"
    message = "Token required."


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token expired."
    recovery = Recovery.refresh


class TokenInvalid(AuthError):
    code = "token_invalid"
    message = "Invalid token."


class TokenInvalidOrExpired(AuthError):
    code = "token_invalid_or_expired"
    message = "Invalid or expired refresh token."


class TokenNotRecognized(AuthError):
    code = "token_not_recognized"
    message = "Refresh token is not recognized."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Too many login attempts. Please try again later."
    recovery = Recovery.wait


class PermissionDenied(AuthError):
    code = "permission_denied"
    status_code = 403
    message = "Insufficient permissions."
    recovery = Recovery.none


class RoleDenied(AuthError):
    code = "role_denied"
    status_code = 403
    message = "Insufficient role privileges."
    recovery = Recovery.none


class CurrentPasswordInvalid(AuthError):
    code = "bad_current_password"
    status_code = 400
    message = "Current password is incorrect."
    recovery = Recovery.retry
