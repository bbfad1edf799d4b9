from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import or_, true

from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.authz.registry import Permission, PLATFORM_ROLES, is_read


# Session settings the application sets per transaction for row level security.
RLS_ORG_SETTING = "app.organization_id"
RLS_ROLE_SETTING = "app.role"


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface missing tenant predicates before a query can run unscoped.
    message: str


def require_organization_id(organization_id: str | None) -> None:
    if not organization_id:
        raise TenantPredicateError("Tenant predicate required but organization_id is missing")


def tenant_predicate(model, organization_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_organization_id(organization_id)
    return model.organization_id == organization_id


def visibility_predicate(model, actor: ActorContext, permission: Permission) -> object:
    """Row filter equivalent of the cross-tenant guard.

    Same tenant always matches; system-wide rows (NULL organization_id) match
    only for read permissions; platform roles see everything.
    """
    if actor.role in PLATFORM_ROLES:
        return true()
    require_organization_id(actor.organization_id)
    own_rows = model.organization_id == actor.organization_id
    if is_read(permission):
        return or_(own_rows, model.organization_id.is_(None))
    return own_rows


def tenant_rls_policy_sql(table: str) -> list[str]:
    # Emit PostgreSQL RLS DDL for the same rule so the database layer cannot drift.
    platform_roles = ", ".join(f"'{role.value}'" for role in sorted(PLATFORM_ROLES))
    org_match = f"organization_id = current_setting('{RLS_ORG_SETTING}', true)"
    platform = f"current_setting('{RLS_ROLE_SETTING}', true) IN ({platform_roles})"
    return [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        (
            f"CREATE POLICY {table}_tenant_read ON {table} FOR SELECT "
            f"USING ({org_match} OR organization_id IS NULL OR {platform})"
        ),
        (
            f"CREATE POLICY {table}_tenant_write ON {table} FOR ALL "
            f"USING ({org_match} OR {platform}) "
            f"WITH CHECK ({org_match} OR {platform})"
        ),
    ]
