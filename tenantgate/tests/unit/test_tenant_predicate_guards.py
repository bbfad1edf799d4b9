from __future__ import annotations

import pytest
from sqlalchemy.dialects import postgresql

from tenantgate.domain.models import User
from tenantgate.persistence.guards import (
    TenantPredicateError,
    tenant_predicate,
    tenant_rls_policy_sql,
    visibility_predicate,
)
from tenantgate.persistence.repos import audit as audit_repo
from tenantgate.persistence.repos import users as users_repo
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.authz.registry import Permission, RoleName


def _sql(predicate) -> str:
    return str(predicate.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}))


@pytest.mark.asyncio
async def test_user_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await users_repo.list_users(None, None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_audit_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await audit_repo.list_events(None, organization_id="")  # type: ignore[arg-type]


def test_tenant_predicate_binds_organization() -> None:
    assert _sql(tenant_predicate(User, "org-a")) == "users.organization_id = 'org-a'"


def test_visibility_predicate_allows_system_rows_for_reads_only() -> None:
    actor = ActorContext(user_id="u1", organization_id="org-a", role=RoleName.ADMIN)
    read = _sql(visibility_predicate(User, actor, Permission.USERS_VIEW))
    write = _sql(visibility_predicate(User, actor, Permission.USERS_EDIT))
    assert "users.organization_id IS NULL" in read
    assert "'org-a'" in read
    assert write == "users.organization_id = 'org-a'"


def test_visibility_predicate_is_unrestricted_for_platform_roles() -> None:
    actor = ActorContext(user_id="root", organization_id="platform", role=RoleName.SUPER_ADMIN)
    assert _sql(visibility_predicate(User, actor, Permission.USERS_DELETE)) == "true"


def test_visibility_predicate_rejects_missing_organization() -> None:
    actor = ActorContext(user_id="u1", organization_id="", role=RoleName.STAFF)
    with pytest.raises(TenantPredicateError):
        visibility_predicate(User, actor, Permission.CLIENTS_VIEW)


def test_rls_policy_mirrors_the_tenant_guard() -> None:
    statements = tenant_rls_policy_sql("users")
    assert statements[0] == "ALTER TABLE users ENABLE ROW LEVEL SECURITY"
    assert statements[1] == "ALTER TABLE users FORCE ROW LEVEL SECURITY"
    read_policy, write_policy = statements[2], statements[3]
    assert "FOR SELECT" in read_policy
    assert "organization_id IS NULL" in read_policy
    assert "organization_id IS NULL" not in write_policy
    assert "current_setting('app.organization_id', true)" in write_policy
    assert "'super_admin'" in write_policy
