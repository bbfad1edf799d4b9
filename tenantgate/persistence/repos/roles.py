from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.domain.models import Permission, Role, RoleGrant
from tenantgate.services.authz.registry import (
    PRIVILEGE_RANK,
    REGISTRY_VERSION,
    Permission as RegistryPermission,
    RoleName,
    role_grant_rows,
)


@dataclass(frozen=True)
class GrantDrift:
    # Differences between the stored mirror and the in-code registry.
    missing: frozenset[tuple[str, str, str]]
    stale: frozenset[tuple[str, str, str]]

    @property
    def in_sync(self) -> bool:
        return not self.missing and not self.stale


async def list_role_grants(session: AsyncSession) -> set[tuple[str, str, str]]:
    result = await session.execute(
        select(RoleGrant.role_id, RoleGrant.permission_id, RoleGrant.scope)
    )
    return {(row[0], row[1], row[2]) for row in result.all()}


async def diff_role_grants(session: AsyncSession) -> GrantDrift:
    stored = await list_role_grants(session)
    expected = set(role_grant_rows())
    return GrantDrift(missing=frozenset(expected - stored), stale=frozenset(stored - expected))


async def sync_role_grants(session: AsyncSession) -> GrantDrift:
    """Bring the roles, permissions and role_grants tables in line with the registry.

    Returns the drift found before syncing. The caller owns the transaction.
    """
    for role in RoleName:
        stmt = insert(Role).values(
            id=role.value,
            organization_id=None,
            name=role.value,
            privilege_rank=PRIVILEGE_RANK[role],
        )
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=[Role.id],
                set_={"privilege_rank": stmt.excluded.privilege_rank},
            )
        )
    for permission in RegistryPermission:
        stmt = insert(Permission).values(
            id=permission.value,
            resource=permission.resource,
            action=permission.action,
        )
        await session.execute(stmt.on_conflict_do_nothing(index_elements=[Permission.id]))

    drift = await diff_role_grants(session)
    for role_id, permission_id, _scope in drift.stale:
        await session.execute(
            delete(RoleGrant).where(
                RoleGrant.role_id == role_id,
                RoleGrant.permission_id == permission_id,
            )
        )
    for role_id, permission_id, scope in drift.missing:
        stmt = insert(RoleGrant).values(
            role_id=role_id,
            permission_id=permission_id,
            scope=scope,
            registry_version=REGISTRY_VERSION,
        )
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=[RoleGrant.role_id, RoleGrant.permission_id],
                set_={"scope": scope, "registry_version": REGISTRY_VERSION},
            )
        )
    return drift
