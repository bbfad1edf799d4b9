from __future__ import annotations

import pytest

from tenantgate.services.authz.registry import (
    ALL_PERMISSIONS,
    Permission,
    RoleName,
    Scope,
    denied_for,
    is_read,
    normalize_role,
    parse_permission,
    permissions_for,
    privilege_rank,
    role_grant_rows,
    tenant_roles,
)


@pytest.mark.parametrize("role", list(RoleName))
def test_allowed_and_denied_partition_all_permissions(role: RoleName) -> None:
    grants = permissions_for(role)
    assert grants.allowed | grants.denied == ALL_PERMISSIONS
    assert grants.allowed & grants.denied == frozenset()
    assert denied_for(role) == grants.denied


def test_registry_has_twelve_namespaced_permissions() -> None:
    assert len(ALL_PERMISSIONS) == 12
    assert {permission.resource for permission in Permission} == {
        "users",
        "clients",
        "organization",
    }


@pytest.mark.parametrize(
    ("role", "count"),
    [
        (RoleName.OWNER, 12),
        (RoleName.ADMIN, 10),
        (RoleName.MANAGER, 5),
        (RoleName.STAFF, 2),
        (RoleName.SUPER_ADMIN, 12),
    ],
)
def test_allow_set_sizes(role: RoleName, count: int) -> None:
    assert len(permissions_for(role).allowed) == count


def test_admin_cannot_delete_or_transfer_organization() -> None:
    assert denied_for(RoleName.ADMIN) == {
        Permission.ORGANIZATION_DELETE,
        Permission.ORGANIZATION_TRANSFER,
    }


def test_manager_and_staff_denials() -> None:
    manager_denied = denied_for(RoleName.MANAGER)
    for permission in (
        Permission.USERS_CREATE,
        Permission.USERS_DELETE,
        Permission.CLIENTS_DELETE,
        Permission.ORGANIZATION_EDIT,
        Permission.ORGANIZATION_BILLING,
        Permission.ORGANIZATION_DELETE,
        Permission.ORGANIZATION_TRANSFER,
    ):
        assert permission in manager_denied
    assert permissions_for(RoleName.STAFF).allowed == {
        Permission.USERS_EDIT,
        Permission.CLIENTS_VIEW,
    }


@pytest.mark.parametrize(
    ("role", "scope"),
    [
        (RoleName.STAFF, Scope.SELF),
        (RoleName.MANAGER, Scope.SELF),
        (RoleName.ADMIN, Scope.GLOBAL),
        (RoleName.OWNER, Scope.GLOBAL),
        (RoleName.SUPER_ADMIN, Scope.GLOBAL),
    ],
)
def test_users_edit_scope(role: RoleName, scope: Scope) -> None:
    assert permissions_for(role).scope_of(Permission.USERS_EDIT) == scope


def test_privilege_rank_is_a_total_order() -> None:
    ranks = [privilege_rank(role) for role in RoleName]
    assert sorted(ranks) == [1, 2, 3, 4, 5]
    assert privilege_rank("super_admin") > privilege_rank("owner") > privilege_rank("admin")
    assert privilege_rank("admin") > privilege_rank("manager") > privilege_rank("staff")


def test_unknown_names_are_rejected() -> None:
    with pytest.raises(ValueError):
        normalize_role("root")
    with pytest.raises(ValueError):
        parse_permission("users.impersonate")
    with pytest.raises(ValueError):
        Permission("clients.export")
    assert normalize_role(" Super Admin ") == RoleName.SUPER_ADMIN
    assert parse_permission("USERS.VIEW") == Permission.USERS_VIEW


def test_only_view_actions_are_reads() -> None:
    reads = {permission for permission in Permission if is_read(permission)}
    assert reads == {Permission.USERS_VIEW, Permission.CLIENTS_VIEW}


def test_grant_rows_mirror_the_matrix() -> None:
    rows = list(role_grant_rows())
    assert len(rows) == 12 + 10 + 5 + 2 + 12
    assert ("staff", "users.edit", "self") in rows
    assert ("admin", "organization.delete", "global") not in rows


def test_tenant_roles_exclude_platform_roles() -> None:
    assert tenant_roles() == [RoleName.OWNER, RoleName.ADMIN, RoleName.MANAGER, RoleName.STAFF]
