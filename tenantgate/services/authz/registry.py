"""Fixed permission registry.

The role/permission matrix below is the single source of truth for the
decision engine, the database mirror tables and the row-level filter.
Adding a capability is a registry migration, never a runtime operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping


REGISTRY_VERSION = 1


class Permission(str, Enum):
    USERS_VIEW = "users.view"
    USERS_CREATE = "users.create"
    USERS_EDIT = "users.edit"
    USERS_DELETE = "users.delete"
    CLIENTS_VIEW = "clients.view"
    CLIENTS_CREATE = "clients.create"
    CLIENTS_EDIT = "clients.edit"
    CLIENTS_DELETE = "clients.delete"
    ORGANIZATION_EDIT = "organization.edit"
    ORGANIZATION_BILLING = "organization.billing"
    ORGANIZATION_DELETE = "organization.delete"
    ORGANIZATION_TRANSFER = "organization.transfer"

    @property
    def resource(self) -> str:
        return self.value.split(".", 1)[0]

    @property
    def action(self) -> str:
        return self.value.split(".", 1)[1]


class RoleName(str, Enum):
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"
    OWNER = "owner"
    SUPER_ADMIN = "super_admin"


class Scope(str, Enum):
    GLOBAL = "global"
    SELF = "self"


ALL_PERMISSIONS: frozenset[Permission] = frozenset(Permission)

# Total order over roles; higher rank may manage strictly lower ranks.
PRIVILEGE_RANK: Mapping[RoleName, int] = MappingProxyType(
    {
        RoleName.STAFF: 1,
        RoleName.MANAGER: 2,
        RoleName.ADMIN: 3,
        RoleName.OWNER: 4,
        RoleName.SUPER_ADMIN: 5,
    }
)

# Roles that exist outside any tenant and are never assignable by tenant users.
PLATFORM_ROLES: frozenset[RoleName] = frozenset({RoleName.SUPER_ADMIN})

_READ_ACTIONS = {"view"}

_G = Scope.GLOBAL
_S = Scope.SELF

_ROLE_GRANTS: dict[RoleName, dict[Permission, Scope]] = {
    RoleName.SUPER_ADMIN: {permission: _G for permission in Permission},
    RoleName.OWNER: {permission: _G for permission in Permission},
    RoleName.ADMIN: {
        Permission.USERS_VIEW: _G,
        Permission.USERS_CREATE: _G,
        Permission.USERS_EDIT: _G,
        Permission.USERS_DELETE: _G,
        Permission.CLIENTS_VIEW: _G,
        Permission.CLIENTS_CREATE: _G,
        Permission.CLIENTS_EDIT: _G,
        Permission.CLIENTS_DELETE: _G,
        Permission.ORGANIZATION_EDIT: _G,
        Permission.ORGANIZATION_BILLING: _G,
    },
    RoleName.MANAGER: {
        Permission.USERS_VIEW: _G,
        Permission.USERS_EDIT: _S,
        Permission.CLIENTS_VIEW: _G,
        Permission.CLIENTS_CREATE: _G,
        Permission.CLIENTS_EDIT: _G,
    },
    RoleName.STAFF: {
        Permission.USERS_EDIT: _S,
        Permission.CLIENTS_VIEW: _G,
    },
}


@dataclass(frozen=True)
class RoleGrants:
    # Allowed capabilities for one role and the scope each is granted at.
    role: RoleName
    allowed: frozenset[Permission]
    scope: Mapping[Permission, Scope]

    @property
    def denied(self) -> frozenset[Permission]:
        return ALL_PERMISSIONS - self.allowed

    def allows(self, permission: Permission) -> bool:
        return permission in self.allowed

    def scope_of(self, permission: Permission) -> Scope | None:
        return self.scope.get(permission)


def _build_grants() -> dict[RoleName, RoleGrants]:
    grants: dict[RoleName, RoleGrants] = {}
    for role in RoleName:
        mapping = _ROLE_GRANTS[role]
        grants[role] = RoleGrants(
            role=role,
            allowed=frozenset(mapping),
            scope=MappingProxyType(dict(mapping)),
        )
    return grants


_GRANTS = _build_grants()


def normalize_role(role: str | RoleName) -> RoleName:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    if isinstance(role, RoleName):
        return role
    normalized = str(role).strip().lower().replace(" ", "_")
    try:
        return RoleName(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def parse_permission(value: str | Permission) -> Permission:
    # Reject unknown capability names at the boundary instead of at decision time.
    if isinstance(value, Permission):
        return value
    try:
        return Permission(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown permission: {value}") from exc


def permissions_for(role: str | RoleName) -> RoleGrants:
    return _GRANTS[normalize_role(role)]


def denied_for(role: str | RoleName) -> frozenset[Permission]:
    return permissions_for(role).denied


def privilege_rank(role: str | RoleName) -> int:
    return PRIVILEGE_RANK[normalize_role(role)]


def is_read(permission: Permission) -> bool:
    return permission.action in _READ_ACTIONS


def read_permissions() -> frozenset[Permission]:
    return frozenset(permission for permission in Permission if is_read(permission))


def tenant_roles() -> list[RoleName]:
    # Roles assignable inside an organization, highest rank first.
    roles = [role for role in RoleName if role not in PLATFORM_ROLES]
    return sorted(roles, key=lambda role: PRIVILEGE_RANK[role], reverse=True)


def role_grant_rows() -> Iterator[tuple[str, str, str]]:
    # Flatten the matrix into (role, permission, scope) rows for the DB mirror.
    for role in RoleName:
        grants = _GRANTS[role]
        for permission in Permission:
            scope = grants.scope_of(permission)
            if scope is not None:
                yield role.value, permission.value, scope.value
