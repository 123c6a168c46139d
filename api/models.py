"""
API request and response models for tokengate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Principal, PrincipalKind, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: deliverability is the mail system's problem, not ours.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"

# bcrypt only looks at the first 72 bytes; 128 chars keeps hashing cost bounded.
PASSWORD_MAX = 128
PASSWORD_MIN = 6


class _EmailModel(BaseModel):
    @field_validator("email", mode="before", check_fields=False)
    @classmethod
    def normalize_email(cls, value):
        """Strip and lowercase before the pattern check; passwords are left untouched."""
        return value.strip().lower() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(_EmailModel):
    """Request body for POST /api/v1/auth/login.

    audience picks the credential store: end users log in with "user",
    operators of the admin console with "admin".
    """

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    audience: PrincipalKind = PrincipalKind.user


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    refresh_token is optional at the schema level so a missing token yields
    the token_missing error rather than a 422.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(BaseModel):
    """Omit refresh_token to sign out of every device."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class RegisterRequest(_EmailModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    role: Literal["student", "instructor"] = "student"


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class AdminCreate(_EmailModel):
    """Request body for POST /api/v1/admin/admins."""

    name: str = Field(default="", max_length=100)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    role: Literal["super-admin", "admin", "moderator"] = "admin"


class PrincipalPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/principals/{kind}/{id}. Both fields optional."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Public view of a user or admin. Never includes hashes or tokens."""

    model_config = ConfigDict(frozen=True)

    id: int
    kind: PrincipalKind
    email: str
    name: str
    role: Role
    is_active: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            kind=principal.kind,
            email=principal.email,
            name=principal.name,
            role=principal.role,
            is_active=principal.is_active,
            last_login=principal.last_login.isoformat() if principal.last_login else None,
            created_at=principal.created_at.isoformat() if principal.created_at else None,
        )


class AdminPrincipalResponse(PrincipalResponse):
    """Admin-console view: adds lockout state."""

    failed_attempts: int = 0
    locked_until: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "AdminPrincipalResponse":
        base = PrincipalResponse.from_principal(principal).model_dump()
        return cls(
            **base,
            failed_attempts=principal.failed_attempts,
            locked_until=principal.lock_until.isoformat() if principal.lock_until else None,
        )


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    """Response for login and registration: tokens plus the authenticated principal."""

    principal: PrincipalResponse


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    principal: PrincipalResponse
    permissions: dict[str, list[str]]


class UnlockResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    unlocked: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    retry_after is set for rate_limited and account_locked. recovery tells
    clients what to do next: retry, wait, refresh, relogin or none.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None
    recovery: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
