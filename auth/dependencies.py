"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Tokens arrive in the Authorization: Bearer <token> header only. The verifier
lives on app.state.auth (an AuthService built in the lifespan), so these
helpers hold no state of their own.

get_current_principal() verifies the token and attaches
request.state.current_principal = CurrentPrincipal(id, kind, role) for
downstream handlers. require_role(), require_permission() and require_kind()
build on it; failures raise AuthError subclasses and the exception handler in
api/main.py renders the error envelope.

Layer rule: no imports from api/ or client/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import RoleDenied
from auth.models import Principal, PrincipalKind, Role
from auth.verifier import bearer_token


def get_current_principal(request: Request) -> Principal:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = bearer_token(request.headers.get("Authorization"))
    principal = request.app.state.auth.authenticate(token)
    request.state.current_principal = principal.to_current()
    return principal


def require_kind(kind: PrincipalKind | str) -> Callable[..., Principal]:
    """Only principals from the given store (user or admin) pass."""
    kind = PrincipalKind(kind)

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.kind != kind:
            raise RoleDenied(f"{kind.value.capitalize()} account required.")
        return principal

    return dependency


def require_role(*roles: Role | str) -> Callable[..., Principal]:
    """Coarse check: the principal must hold one of `roles`."""
    allowed = frozenset(Role(r) for r in roles)

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        request.app.state.auth.authorizer.require_role(principal, allowed)
        return principal

    return dependency


def require_permission(resource: str, action: str) -> Callable[..., Principal]:
    """Fine-grained check against the permission matrix.

    Usage:
        @router.delete("/courses/{id}")
        async def route(principal: Principal = Depends(require_permission("courses", "delete"))): ...
    """

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        request.app.state.auth.authorizer.require_permission(principal, resource, action)
        return principal

    return dependency
