"""Authorization decision engine.

``evaluate`` is the pure decision procedure; ``authorize`` wraps it with the
audit trail. Steps run in a fixed order and the first Deny wins.
"""

from __future__ import annotations

from typing import Any, Callable

from tenantgate.services.audit import AuditLogger
from tenantgate.services.authz.decisions import ActorContext, Decision, ResourceRef
from tenantgate.services.authz.guards import (
    check_grant,
    check_membership,
    check_privilege,
    check_self_scope,
    check_tenant,
)
from tenantgate.services.authz.registry import (
    Permission,
    RoleName,
    parse_permission,
    privilege_rank,
)


Step = Callable[[ActorContext, Permission, "ResourceRef | None", "RoleName | None"], Decision]

# Allows that change who holds power in a tenant are audited alongside denials.
_AUDITED_ALLOWS = frozenset(
    {Permission.ORGANIZATION_DELETE, Permission.ORGANIZATION_TRANSFER}
)


def _grant_step(actor, permission, resource, new_role) -> Decision:
    return check_grant(actor, permission)


def _self_scope_step(actor, permission, resource, new_role) -> Decision:
    return check_self_scope(actor, permission, resource)


def _tenant_step(actor, permission, resource, new_role) -> Decision:
    if resource is None:
        return Decision.allow()
    return check_tenant(actor, resource.organization_id, permission)


def _privilege_step(actor, permission, resource, new_role) -> Decision:
    return check_privilege(actor, permission, resource, new_role)


STEPS: tuple[Step, ...] = (_grant_step, _self_scope_step, _tenant_step, _privilege_step)


def evaluate(
    actor: ActorContext,
    permission: Permission | str,
    resource: ResourceRef | None = None,
    *,
    new_role: RoleName | None = None,
) -> Decision:
    # Deterministic and side-effect free; identical inputs yield identical decisions.
    resolved = parse_permission(permission)
    for step in STEPS:
        decision = step(actor, resolved, resource, new_role)
        if decision.denied:
            return decision
    return Decision.allow()


def is_security_relevant_allow(
    permission: Permission,
    resource: ResourceRef | None,
    new_role: RoleName | None,
) -> bool:
    if new_role is not None or permission in _AUDITED_ALLOWS:
        return True
    if permission == Permission.USERS_DELETE and resource is not None and resource.role:
        return privilege_rank(resource.role) >= privilege_rank(RoleName.ADMIN)
    return False


class AuthorizationEngine:
    def __init__(self, audit: AuditLogger) -> None:
        self._audit = audit

    def evaluate(
        self,
        actor: ActorContext,
        permission: Permission | str,
        resource: ResourceRef | None = None,
        *,
        new_role: RoleName | None = None,
    ) -> Decision:
        return evaluate(actor, permission, resource, new_role=new_role)

    async def authorize(
        self,
        actor: ActorContext,
        permission: Permission | str,
        resource: ResourceRef | None = None,
        *,
        new_role: RoleName | None = None,
        context: dict[str, Any] | None = None,
    ) -> Decision:
        resolved = parse_permission(permission)
        decision = evaluate(actor, resolved, resource, new_role=new_role)
        if decision.denied or is_security_relevant_allow(resolved, resource, new_role):
            metadata: dict[str, Any] = {}
            if new_role is not None:
                metadata["new_role"] = new_role.value
            if resource is not None and resource.organization_id != actor.organization_id:
                metadata["resource_organization_id"] = resource.organization_id
            # The audit entry lands before the caller can surface the decision.
            await self._audit.record_decision(
                actor,
                resolved.value,
                decision,
                resource,
                metadata=metadata,
                context=context,
            )
        return decision

    async def authorize_membership(
        self,
        actor: ActorContext,
        organization_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> Decision:
        decision = check_membership(actor, organization_id)
        if decision.denied:
            await self._audit.record_decision(
                actor,
                "organization.membership",
                decision,
                ResourceRef.for_organization(organization_id),
                context=context,
            )
        return decision
