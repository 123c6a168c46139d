"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login            -- email/password login for users or admins
  POST /api/v1/auth/refresh          -- rotate a refresh token, get a new pair
  POST /api/v1/auth/logout           -- revoke one refresh token, or all (requires auth)
  GET  /api/v1/auth/me               -- current principal and its permissions (requires auth)
  POST /api/v1/auth/register         -- self-registration for end users
  PUT  /api/v1/auth/change-password  -- new password, revokes every refresh token (requires auth)

Security:
  [C1] AuthService.login() provides timing equalization -- never inline the
       lookup + verify_password() pair here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Login attempts are rate-limited per client address inside AuthService
  before any credential check; the global slowapi limit applies on top.

Handlers are plain `def` where they hash or verify passwords so bcrypt runs in
the threadpool instead of blocking the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.service import AuthService, LoginResult
from auth.tokens import TokenPair

# Auth policy:
# - POST /api/v1/auth/login:            public
# - POST /api/v1/auth/refresh:          public -- the refresh token is the credential
# - POST /api/v1/auth/register:         public, unless SELF_REGISTRATION_ENABLED=false
# - POST /api/v1/auth/logout:           requires auth (get_current_principal)
# - GET  /api/v1/auth/me:               requires auth (get_current_principal)
# - PUT  /api/v1/auth/change-password:  requires auth (get_current_principal)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth


def _expires_in(service: AuthService, tokens: TokenPair) -> int:
    return max(0, int((tokens.access_expires_at - service.clock.now()).total_seconds()))


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_payload(service: AuthService, result: LoginResult) -> dict:
    return LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=_expires_in(service, result.tokens),
        principal=PrincipalResponse.from_principal(result.principal),
    ).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh pair.

    Unknown email and wrong password produce the same bad_credentials error.
    A locked account answers account_locked even when the password is right.
    """
    service = _service(request)
    source = request.client.host if request.client else "unknown"
    result = service.login(body.email, body.password, audience=body.audience, source=source)
    return _no_store(_login_payload(service, result))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed.

    Any failure here means the session is over: clients drop their
    credentials and send the user back to the login page.
    """
    service = _service(request)
    tokens = service.refresh(body.refresh_token)
    return _no_store(
        TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=_expires_in(service, tokens),
        ).model_dump()
    )


@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an end-user account and log it in."""
    if not request.app.state.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    service = _service(request)
    try:
        result = service.register(body.email, body.password, name=body.name, role=body.role)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    return _no_store(_login_payload(service, result), status_code=201)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    principal: Principal = Depends(get_current_principal),
) -> LogoutResponse:
    """Revoke the given refresh token, or every refresh token when none is sent.

    The access token stays valid until it expires; clients discard it locally.
    """
    token = body.refresh_token if body else None
    revoked = _service(request).logout(principal, token)
    message = "Logged out." if token else "Logged out of all devices."
    return LogoutResponse(message=message, revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    grants = _service(request).authorizer.permissions_for(principal.role)
    return MeResponse(
        principal=PrincipalResponse.from_principal(principal),
        permissions={resource: sorted(actions) for resource, actions in grants.items()},
    )


@router.put("/auth/change-password", response_model=LogoutResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> LogoutResponse:
    """Set a new password. Every refresh token is revoked, so all devices must log in again."""
    revoked = _service(request).change_password(principal, body.current_password, body.new_password)
    return LogoutResponse(message="Password changed. Please log in again.", revoked=revoked)
