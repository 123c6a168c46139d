"""
api/routes/v1/admin.py -- Admin-console principal management.

Routes (admin principals only):
  GET   /api/v1/admin/admins                          -- list admins       (admin:read)
  POST  /api/v1/admin/admins                          -- create an admin   (admin:create)
  GET   /api/v1/admin/users                           -- list users        (users:read)
  PATCH /api/v1/admin/principals/{kind}/{id}          -- role / is_active  (users:update | admin:update)
  POST  /api/v1/admin/principals/{kind}/{id}/unlock   -- clear lockout     (role super-admin)

Security:
  [M4] PATCH blocks self-deactivation.
  Deactivation revokes every refresh token of the target, so the account is
  signed out everywhere within one access-token lifetime.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import AdminCreate, AdminPrincipalResponse, PrincipalPatch, UnlockResponse
from auth.dependencies import require_kind, require_permission, require_role
from auth.models import Principal, PrincipalKind, Role
from auth.service import AuthService

router = APIRouter(prefix="/admin", dependencies=[Depends(require_kind(PrincipalKind.admin))])

# Resource name in the permission matrix for each principal kind.
_RESOURCE_FOR_KIND = {PrincipalKind.user: "users", PrincipalKind.admin: "admin"}


def _service(request: Request) -> AuthService:
    return request.app.state.auth


def _not_found(kind: PrincipalKind) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": f"{kind.value.capitalize()} not found."},
    )


@router.get("/admins", response_model=list[AdminPrincipalResponse])
def list_admins(
    request: Request,
    principal: Principal = Depends(require_permission("admin", "read")),
) -> list[AdminPrincipalResponse]:
    store = _service(request).directory.for_kind(PrincipalKind.admin)
    return [AdminPrincipalResponse.from_principal(p) for p in store.list_principals()]


@router.post("/admins", response_model=AdminPrincipalResponse, status_code=201)
def create_admin(
    request: Request,
    body: AdminCreate,
    principal: Principal = Depends(require_permission("admin", "create")),
) -> AdminPrincipalResponse:
    """Create an admin-console account. Only super-admins hold admin:create."""
    try:
        created = _service(request).create_principal(
            PrincipalKind.admin, body.email, body.password, role=body.role, name=body.name
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An admin with that email already exists."},
        ) from exc
    return AdminPrincipalResponse.from_principal(created)


@router.get("/users", response_model=list[AdminPrincipalResponse])
def list_users(
    request: Request,
    principal: Principal = Depends(require_permission("users", "read")),
) -> list[AdminPrincipalResponse]:
    store = _service(request).directory.for_kind(PrincipalKind.user)
    return [AdminPrincipalResponse.from_principal(p) for p in store.list_principals()]


@router.patch("/principals/{kind}/{principal_id}", response_model=AdminPrincipalResponse)
def update_principal(
    request: Request,
    kind: PrincipalKind,
    principal_id: int,
    body: PrincipalPatch,
    principal: Principal = Depends(require_kind(PrincipalKind.admin)),
) -> AdminPrincipalResponse:
    """Change a principal's role or active flag.

    The permission checked depends on the target: users:update for users,
    admin:update for admins.
    """
    service = _service(request)
    service.authorizer.require_permission(principal, _RESOURCE_FOR_KIND[kind], "update")

    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if service.directory.get(kind, principal_id) is None:
        raise _not_found(kind)

    # [M4] Block self-deactivation
    if body.is_active is False and kind == principal.kind and principal_id == principal.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )

    updated: Principal | None = None
    if body.role is not None:
        try:
            updated = service.set_role(kind, principal_id, body.role)
        except ValueError as exc:
            raise HTTPException(
                status_code=400,
                detail={"code": "invalid_role", "message": str(exc)},
            ) from exc
    if body.is_active is not None:
        updated = service.set_active(kind, principal_id, body.is_active)
    if updated is None:
        raise _not_found(kind)
    return AdminPrincipalResponse.from_principal(updated)


@router.post("/principals/{kind}/{principal_id}/unlock", response_model=UnlockResponse)
def unlock_principal(
    request: Request,
    kind: PrincipalKind,
    principal_id: int,
    principal: Principal = Depends(require_role(Role.super_admin)),
) -> UnlockResponse:
    """Clear failed-attempt count and lock for a principal."""
    service = _service(request)
    if service.directory.get(kind, principal_id) is None:
        raise _not_found(kind)
    return UnlockResponse(unlocked=service.unlock(kind, principal_id))
