"""
api/main.py -- FastAPI application entry point for tokengate.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Requests pass, in order: host allow-list (TrustedHost), CORS, the global
per-address slowapi limit, then request logging. Login rate limiting and
lockout are stricter and live inside the auth core, not here.

Lifespan opens the auth database, builds the AuthService through
init_auth_state() and starts the purge task; shutdown reverses that. Tests
call init_auth_state() themselves with their own database and a ManualClock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_principal
from auth.errors import AuthError, Recovery
from auth.models import Principal
from auth.service import AuthService, build_auth_service
from auth.store import AuthDatabase
from core.clock import Clock
from core.config import Settings, get_settings

VERSION = "0.1.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")


def init_auth_state(app: FastAPI, settings: Settings, db: AuthDatabase, clock: Clock | None = None) -> AuthService:
    """Attach settings, database and a freshly built AuthService to app.state."""
    app.state.settings = settings
    app.state.db = db
    app.state.auth = build_auth_service(settings, db, clock)
    logger.info(
        "Auth ready: lockout %d failures / %ds, login limit %d per %ds (%s backend)",
        settings.lockout_threshold,
        settings.lockout_duration_seconds,
        settings.login_rate_limit_attempts,
        settings.login_rate_limit_window_seconds,
        settings.rate_limit_backend,
    )
    return app.state.auth


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Every `interval` seconds drop expired refresh tokens and elapsed rate-limit windows.

    Runs until the lifespan cancels it.
    """
    while True:
        await asyncio.sleep(interval)
        counts = app.state.auth.purge_expired()
        if any(counts.values()):
            logger.info("Purged expired auth state: %s", counts)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    db = AuthDatabase(settings.database_url)
    init_auth_state(app, settings, db)
    purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))
    app.state.purge_task = purge_task
    logger.info("tokengate API %s started", VERSION)
    try:
        yield
    finally:
        purge_task.cancel()
        db.close()
        logger.info("tokengate API stopped")


app = FastAPI(
    title="tokengate API",
    description="Token-based authentication and session lifecycle for users and admins.",
    version=VERSION,
    lifespan=lifespan,
    # served behind authentication below
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware (registration order == request order)
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Retry-After"],
    max_age=3600,
)
app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access-log line per request; includes the principal once a token was verified."""
    started = time.perf_counter()
    response = await call_next(request)
    current = getattr(request.state, "current_principal", None)
    logger.info(
        "%s %s -> %d in %.1fms from %s%s",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
        request.client.host if request.client else "unknown",
        f" as {current.kind.value}:{current.id}" if current else "",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="tokengate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    return get_redoc_html(openapi_url="/openapi.json", title="tokengate API")


# ---------------------------------------------------------------------------
# Error envelope
#
# Every failure leaves the API as {"error": ErrorDetail}. Clients branch on
# error.code and error.recovery, never on the status line alone.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, error: ErrorDetail, headers: dict[str, str] | None = None) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=ErrorResponse(error=error).model_dump(), headers=headers)
    if error.retry_after is not None:
        response.headers["Retry-After"] = str(error.retry_after)
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """401/403/429 from the auth core. Never cacheable; 401s name the Bearer challenge."""
    headers = {"Cache-Control": "no-store"}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{exc.code}"'
    return _error_response(exc.status_code, ErrorDetail(**exc.to_detail()), headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """The global slowapi limit, as opposed to the per-source login limit."""
    error = ErrorDetail(
        code="rate_limited",
        message="Too many requests.",
        detail=str(exc.detail),
        retry_after=int(getattr(exc, "retry_after", 60)),
        recovery=Recovery.wait.value,
    )
    return _error_response(429, error)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ErrorDetail(
        code="validation_error",
        message="Request validation failed.",
        detail=str(exc.errors()),
        recovery=Recovery.retry.value,
    )
    return _error_response(422, error)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException(detail={"code": ..., "message": ...}); plain strings are wrapped."""
    if isinstance(exc.detail, dict):
        error = ErrorDetail(**exc.detail)
    else:
        error = ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
    return _error_response(exc.status_code, error, getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; the client only sees internal_error."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


@app.get("/api/v1/health", tags=["Health"])
@limiter.exempt
async def health(request: Request) -> HealthResponse:
    """Liveness plus database reachability. Public and exempt from the global limit."""
    db_ok = request.app.state.db.ping()
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=VERSION,
        database="ok" if db_ok else "unavailable",
    )
