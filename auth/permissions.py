"""
auth/permissions.py -- One authorization capability for role and permission checks.

A single static matrix answers both questions:
  "does this principal hold one of these roles?"          (coarse)
  "may this principal perform <action> on <resource>?"    (fine-grained)

super-admin holds every permission. Unknown resources or actions are denied.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from auth.errors import PermissionDenied, RoleDenied
from auth.models import CurrentPrincipal, Principal, Role

CRUD = frozenset({"create", "read", "update", "delete"})
ALL = "*"

PERMISSION_MATRIX: dict[Role, dict[str, frozenset[str]]] = {
    Role.super_admin: {ALL: frozenset({ALL})},
    Role.admin: {
        "courses": CRUD,
        "projects": CRUD,
        "alumni": CRUD,
        "content": CRUD,
        "enrollments": frozenset({"read", "update"}),
        "payments": frozenset({"read"}),
        "users": frozenset({"read", "update"}),
        "admin": frozenset({"read"}),
    },
    Role.moderator: {
        "courses": frozenset({"read", "update"}),
        "projects": frozenset({"read", "update"}),
        "alumni": frozenset({"read", "update"}),
        "content": frozenset({"read", "update"}),
        "users": frozenset({"read"}),
    },
    Role.instructor: {
        "courses": frozenset({"create", "read", "update"}),
        "enrollments": frozenset({"read"}),
        "content": frozenset({"read"}),
    },
    Role.student: {
        "courses": frozenset({"read"}),
        "enrollments": frozenset({"create", "read"}),
        "payments": frozenset({"create", "read"}),
        "content": frozenset({"read"}),
    },
}


class Authorizer:
    """Role and permission checks over one matrix.

    Usage:
        authz = Authorizer()
        authz.require_role(principal, {Role.super_admin})
        authz.require_permission(principal, "courses", "delete")
    """

    def __init__(self, matrix: Mapping[Role, Mapping[str, Iterable[str]]] | None = None) -> None:
        source = PERMISSION_MATRIX if matrix is None else matrix
        self._matrix: dict[Role, dict[str, frozenset[str]]] = {
            Role(role): {resource: frozenset(actions) for resource, actions in grants.items()}
            for role, grants in source.items()
        }

    def has_role(self, principal: Principal | CurrentPrincipal, roles: Iterable[Role | str]) -> bool:
        allowed = {Role(r) for r in roles}
        return Role(principal.role) in allowed

    def has_permission(self, principal: Principal | CurrentPrincipal, resource: str, action: str) -> bool:
        grants = self._matrix.get(Role(principal.role), {})
        if ALL in grants.get(ALL, frozenset()):
            return True
        actions = grants.get(resource, frozenset())
        return action in actions or ALL in actions

    def permissions_for(self, role: Role | str) -> dict[str, frozenset[str]]:
        return dict(self._matrix.get(Role(role), {}))

    def require_role(self, principal: Principal | CurrentPrincipal, roles: Iterable[Role | str]) -> None:
        if not self.has_role(principal, roles):
            raise RoleDenied()

    def require_permission(self, principal: Principal | CurrentPrincipal, resource: str, action: str) -> None:
        if not self.has_permission(principal, resource, action):
            raise PermissionDenied()
