from __future__ import annotations

from datetime import timedelta

import pytest

from tenantgate.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tenantgate.services.authz.registry import RoleName
from tenantgate.services.identity import (
    EDITABLE_USER_FIELDS,
    ORG_DELETED,
    PROTECTED_USER_FIELDS,
    reject_protected_fields,
)
from tenantgate.services.notifications import KIND_PASSWORD_RESET
from tenantgate.tests.utils.auth import DEFAULT_PASSWORD, actor_for, seed_user


NEW_PASSWORD = "Battery-Staple-7?"


@pytest.mark.asyncio
async def test_signup_creates_organization_and_owner(services) -> None:
    result = await services.identity.signup(
        organization_name="  Acme Dental ",
        email="Founder@Acme.test",
        password=DEFAULT_PASSWORD,
        first_name="Ada",
    )
    assert result.organization.name == "Acme Dental"
    assert result.user.role == RoleName.OWNER.value
    assert result.user.email == "founder@acme.test"
    assert result.user.organization_id == result.organization.id
    assert result.user.password_hash != DEFAULT_PASSWORD


@pytest.mark.asyncio
async def test_signup_rejects_weak_password_and_duplicate_email(services) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await services.identity.signup(organization_name="Acme", email="a@acme.test", password="Password123!")
    assert "Password is too common" in exc_info.value.errors

    await services.identity.signup(organization_name="Acme", email="a@acme.test", password=DEFAULT_PASSWORD)
    with pytest.raises(ConflictError):
        await services.identity.signup(organization_name="Other", email="A@acme.test", password=DEFAULT_PASSWORD)


@pytest.mark.asyncio
async def test_concurrent_signup_loser_retires_its_organization(services, monkeypatch) -> None:
    await services.identity.signup(organization_name="First", email="race@acme.test", password=DEFAULT_PASSWORD)

    async def _stale_lookup(email: str):
        # Simulate the second request having read before the first committed.
        return None

    monkeypatch.setattr(services.stores.users, "get_by_email", _stale_lookup)
    added = []
    original_add = services.stores.organizations.add

    async def _tracking_add(organization):
        added.append(organization)
        return await original_add(organization)

    monkeypatch.setattr(services.stores.organizations, "add", _tracking_add)
    with pytest.raises(ConflictError):
        await services.identity.signup(organization_name="Second", email="race@acme.test", password=DEFAULT_PASSWORD)
    orphan = await services.stores.organizations.get(added[0].id)
    assert orphan.status == ORG_DELETED


def test_protected_fields_are_rejected_before_unknown_fields() -> None:
    with pytest.raises(ValidationError) as exc_info:
        reject_protected_fields(
            {"nickname": "x", "organization_id": "org-b"},
            protected=PROTECTED_USER_FIELDS,
            editable=EDITABLE_USER_FIELDS,
        )
    assert exc_info.value.field == "organization_id"


@pytest.mark.asyncio
async def test_update_user_never_moves_tenants(services) -> None:
    owner = await seed_user(services, organization_id="org-a", role="owner")
    staff = await seed_user(services, organization_id="org-a", role="staff")
    with pytest.raises(ValidationError):
        await services.identity.update_user(actor_for(owner), staff.id, {"organization_id": "org-b"})
    assert (await services.stores.users.get(staff.id)).organization_id == "org-a"


@pytest.mark.asyncio
async def test_staff_edits_own_profile_only(services) -> None:
    staff = await seed_user(services, organization_id="org-a", role="staff")
    peer = await seed_user(services, organization_id="org-a", role="staff")

    updated = await services.identity.update_user(actor_for(staff), staff.id, {"first_name": "Sam"})
    assert updated.first_name == "Sam"

    with pytest.raises(AuthorizationError) as exc_info:
        await services.identity.update_user(actor_for(staff), peer.id, {"first_name": "Nope"})
    assert exc_info.value.reason == "SELF_SCOPE_VIOLATION"

    with pytest.raises(AuthorizationError) as exc_info:
        await services.identity.update_user(actor_for(staff), staff.id, {"role": "owner"})
    assert exc_info.value.reason == "PRIVILEGE_RANK_VIOLATION"


@pytest.mark.asyncio
async def test_admin_role_assignment_is_bounded(services) -> None:
    admin = await seed_user(services, organization_id="org-a", role="admin")
    staff = await seed_user(services, organization_id="org-a", role="staff")

    promoted = await services.identity.update_user(actor_for(admin), staff.id, {"role": "manager"})
    assert promoted.role == "manager"
    with pytest.raises(AuthorizationError) as exc_info:
        await services.identity.update_user(actor_for(admin), staff.id, {"role": "admin"})
    assert exc_info.value.reason == "ROLE_ASSIGNMENT_VIOLATION"
    with pytest.raises(ValidationError):
        await services.identity.update_user(actor_for(admin), staff.id, {"role": "super_admin"})


@pytest.mark.asyncio
async def test_cross_tenant_user_access_is_denied(services) -> None:
    admin = await seed_user(services, organization_id="org-a", role="admin")
    foreign = await seed_user(services, organization_id="org-b", role="staff")
    with pytest.raises(AuthorizationError) as exc_info:
        await services.identity.get_user(actor_for(admin), foreign.id)
    assert exc_info.value.reason == "CROSS_TENANT"
    with pytest.raises(NotFoundError):
        await services.identity.get_user(actor_for(admin), "missing")


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["staff", "manager"])
async def test_foreign_users_are_reported_as_cross_tenant_for_every_role(services, role) -> None:
    actor = actor_for(await seed_user(services, organization_id="org-a", role=role))
    foreign = await seed_user(services, organization_id="org-b", role="owner")

    attempts = [
        lambda: services.identity.get_user(actor, foreign.id),
        lambda: services.identity.update_user(actor, foreign.id, {"first_name": "X"}),
        lambda: services.identity.update_user(actor, foreign.id, {"role": "staff"}),
        lambda: services.identity.deactivate_user(actor, foreign.id),
    ]
    for attempt in attempts:
        with pytest.raises(AuthorizationError) as exc_info:
            await attempt()
        assert exc_info.value.reason == "CROSS_TENANT"
    assert (await services.stores.users.get(foreign.id)).is_active


@pytest.mark.asyncio
async def test_malformed_role_fails_the_same_for_foreign_and_missing_users(services) -> None:
    actor = actor_for(await seed_user(services, organization_id="org-a", role="admin"))
    foreign = await seed_user(services, organization_id="org-b", role="staff")
    for user_id in (foreign.id, "missing"):
        with pytest.raises(ValidationError) as exc_info:
            await services.identity.update_user(actor, user_id, {"role": "bogus"})
        assert exc_info.value.field == "role"


@pytest.mark.asyncio
async def test_create_user_in_own_tenant(services) -> None:
    owner = await seed_user(services, organization_id="org-a", role="owner")
    created = await services.identity.create_user(
        actor_for(owner), email="new@acme.test", password=DEFAULT_PASSWORD, role="manager"
    )
    assert created.organization_id == "org-a"
    with pytest.raises(AuthorizationError):
        await services.identity.create_user(
            actor_for(owner),
            email="other@acme.test",
            password=DEFAULT_PASSWORD,
            role="staff",
            organization_id="org-b",
        )


@pytest.mark.asyncio
async def test_deactivate_revokes_sessions(services) -> None:
    owner = await seed_user(services, organization_id="org-a", role="owner")
    staff = await seed_user(services, organization_id="org-a", role="staff")
    issued = await services.sessions.issue(staff, "org-a")

    await services.identity.deactivate_user(actor_for(owner), staff.id)

    assert not (await services.stores.users.get(staff.id)).is_active
    assert not (await services.sessions.validate(issued.token)).ok


@pytest.mark.asyncio
async def test_organization_membership_and_cross_tenant_reads(services) -> None:
    staff = await seed_user(services, organization_id="org-a", role="staff")
    admin_b = await seed_user(services, organization_id="org-b", role="admin")

    organization = await services.identity.get_organization(actor_for(staff), "org-a")
    assert organization.id == "org-a"
    with pytest.raises(AuthorizationError):
        await services.identity.get_organization(actor_for(admin_b), "org-a")
    with pytest.raises(AuthorizationError):
        await services.identity.list_users(actor_for(admin_b), "org-a")
    with pytest.raises(AuthorizationError) as exc_info:
        await services.identity.update_organization(actor_for(staff), "org-a", {"name": "Mine"})
    assert exc_info.value.reason == "NOT_GRANTED"


@pytest.mark.asyncio
async def test_transfer_ownership_demotes_previous_owner(services) -> None:
    owner = await seed_user(services, organization_id="org-a", role="owner")
    admin = await seed_user(services, organization_id="org-a", role="admin")

    new_owner = await services.identity.transfer_ownership(actor_for(owner), "org-a", admin.id)

    assert new_owner.role == "owner"
    assert (await services.stores.users.get(owner.id)).role == "admin"
    events = [event for event in services.stores.audit.events if event.action == "authz.organization.transfer"]
    assert events and events[-1].outcome == "allow"


@pytest.mark.asyncio
async def test_admin_cannot_delete_organization(services) -> None:
    admin = await seed_user(services, organization_id="org-a", role="admin")
    with pytest.raises(AuthorizationError) as exc_info:
        await services.identity.delete_organization(actor_for(admin), "org-a")
    assert exc_info.value.reason == "NOT_GRANTED"


@pytest.mark.asyncio
async def test_delete_organization_soft_deletes_and_revokes(services) -> None:
    owner = await seed_user(services, organization_id="org-a", role="owner")
    staff = await seed_user(services, organization_id="org-a", role="staff")
    issued = await services.sessions.issue(staff, "org-a")

    deleted = await services.identity.delete_organization(actor_for(owner), "org-a")

    assert deleted.status == ORG_DELETED
    assert not (await services.stores.users.get(staff.id)).is_active
    assert not (await services.sessions.validate(issued.token)).ok
    with pytest.raises(NotFoundError):
        await services.identity.get_organization(actor_for(owner), "org-a")


@pytest.mark.asyncio
async def test_invitation_is_single_use(services) -> None:
    admin = await seed_user(services, organization_id="org-a", role="admin")
    issued = await services.identity.invite(actor_for(admin), email="hire@acme.test", role="staff")
    assert issued.invitation.token_hash != issued.token

    user = await services.identity.accept_invitation(token=issued.token, password=DEFAULT_PASSWORD)
    assert user.organization_id == "org-a"
    assert user.role == "staff"

    with pytest.raises(ValidationError):
        await services.identity.accept_invitation(token=issued.token, password=DEFAULT_PASSWORD)


@pytest.mark.asyncio
async def test_expired_invitation_is_rejected(services, clock) -> None:
    owner = await seed_user(services, organization_id="org-a", role="owner")
    issued = await services.identity.invite(actor_for(owner), email="late@acme.test", role="manager")
    clock.advance(hours=73)
    with pytest.raises(ValidationError):
        await services.identity.accept_invitation(token=issued.token, password=DEFAULT_PASSWORD)


@pytest.mark.asyncio
async def test_manager_cannot_invite(services) -> None:
    manager = await seed_user(services, organization_id="org-a", role="manager")
    with pytest.raises(AuthorizationError):
        await services.identity.invite(actor_for(manager), email="x@acme.test", role="staff")


@pytest.mark.asyncio
async def test_change_password_revokes_every_session(services) -> None:
    user = await seed_user(services, organization_id="org-a", role="staff")
    first = await services.sessions.issue(user, "org-a")
    second = await services.sessions.issue(user, "org-a")

    with pytest.raises(ValidationError) as exc_info:
        await services.identity.change_password(
            actor_for(user), current_password="Wrong-Horse-1!", new_password=NEW_PASSWORD
        )
    assert exc_info.value.field == "current_password"

    revoked = await services.identity.change_password(
        actor_for(user), current_password=DEFAULT_PASSWORD, new_password=NEW_PASSWORD
    )
    assert revoked == 2
    assert not (await services.sessions.validate(first.token)).ok
    assert not (await services.sessions.validate(second.token)).ok
    assert (await services.login.login(user.email, NEW_PASSWORD)).token


@pytest.mark.asyncio
async def test_password_reset_flow(services, clock) -> None:
    user = await seed_user(services, organization_id="org-a", role="manager")
    issued = await services.sessions.issue(user, "org-a")

    assert await services.identity.request_password_reset("unknown@acme.test") is None
    token = await services.identity.request_password_reset(user.email)
    assert token
    notification = services.notifier.last(KIND_PASSWORD_RESET, user.email)
    assert notification.token == token
    assert notification.expires_at == clock() + timedelta(minutes=60)
    assert [note.recipient for note in services.notifier.sent] == [user.email]

    assert await services.identity.reset_password(token=token, new_password=NEW_PASSWORD) == 1
    assert not (await services.sessions.validate(issued.token)).ok
    with pytest.raises(ValidationError):
        await services.identity.reset_password(token=token, new_password="Another-Pass-5!")

    expiring = await services.identity.request_password_reset(user.email)
    clock.advance(minutes=61)
    with pytest.raises(ValidationError):
        await services.identity.reset_password(token=expiring, new_password="Another-Pass-5!")
