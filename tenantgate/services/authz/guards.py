from __future__ import annotations

from tenantgate.services.authz.decisions import ActorContext, Decision, DenyReason, ResourceRef
from tenantgate.services.authz.registry import (
    Permission,
    RoleName,
    Scope,
    is_read,
    permissions_for,
    privilege_rank,
)


# Capabilities that can change a target user's standing and therefore need rank checks.
PRIVILEGE_SENSITIVE: frozenset[Permission] = frozenset(
    {Permission.USERS_EDIT, Permission.USERS_DELETE}
)


def check_grant(actor: ActorContext, permission: Permission) -> Decision:
    # Deny anything outside the role's allow-set before looking at the target.
    if not permissions_for(actor.role).allows(permission):
        return Decision.deny(DenyReason.NOT_GRANTED)
    return Decision.allow()


def check_self_scope(
    actor: ActorContext,
    permission: Permission,
    resource: ResourceRef | None,
) -> Decision:
    # Self-scoped capabilities only ever apply to the actor's own record.
    if permissions_for(actor.role).scope_of(permission) != Scope.SELF:
        return Decision.allow()
    if resource is None or resource.id is None or resource.id != actor.user_id:
        return Decision.deny(DenyReason.SELF_SCOPE_VIOLATION)
    return Decision.allow()


def check_tenant(
    actor: ActorContext,
    resource_org_id: str | None,
    permission: Permission,
) -> Decision:
    # Same tenant, platform role, or a read of a system-wide (org-less) resource.
    if actor.is_super_admin:
        return Decision.allow()
    if resource_org_id is None:
        if is_read(permission):
            return Decision.allow()
        return Decision.deny(DenyReason.SYSTEM_RESOURCE_READ_ONLY)
    if resource_org_id == actor.organization_id:
        return Decision.allow()
    return Decision.deny(DenyReason.CROSS_TENANT)


def check_privilege(
    actor: ActorContext,
    permission: Permission,
    resource: ResourceRef | None,
    new_role: RoleName | None,
) -> Decision:
    # Gate edits, deletions and role assignments by the privilege rank order.
    actor_rank = privilege_rank(actor.role)
    target_role = resource.role if resource is not None else None
    if permission in PRIVILEGE_SENSITIVE and target_role is not None:
        own_profile_edit = (
            permission == Permission.USERS_EDIT
            and new_role is None
            and resource is not None
            and resource.id == actor.user_id
        )
        if not own_profile_edit and actor_rank <= privilege_rank(target_role):
            return Decision.deny(DenyReason.PRIVILEGE_RANK_VIOLATION)
    if new_role is not None:
        new_rank = privilege_rank(new_role)
        if actor.role == RoleName.OWNER:
            if new_rank > privilege_rank(RoleName.OWNER):
                return Decision.deny(DenyReason.ROLE_ASSIGNMENT_VIOLATION)
        elif actor_rank <= new_rank:
            return Decision.deny(DenyReason.ROLE_ASSIGNMENT_VIOLATION)
    return Decision.allow()


def check_membership(actor: ActorContext, organization_id: str) -> Decision:
    # Organization-level reads need membership only; no capability names them.
    if actor.is_super_admin or organization_id == actor.organization_id:
        return Decision.allow()
    return Decision.deny(DenyReason.CROSS_TENANT)
