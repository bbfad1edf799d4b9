from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Callable, Mapping
from uuid import uuid4

from tenantgate.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tenantgate.domain.models import Invitation, Organization, PasswordResetToken, User
from tenantgate.persistence.stores import (
    InvitationStore,
    OrganizationStore,
    PasswordResetStore,
    UserStore,
)
from tenantgate.services.audit import OUTCOME_ALLOW, AuditLogger
from tenantgate.services.auth.passwords import (
    generate_token,
    hash_password,
    hash_token,
    validate_password_complexity,
    verify_password,
)
from tenantgate.services.auth.sessions import (
    REVOKE_DEACTIVATED,
    REVOKE_ORGANIZATION_DELETED,
    REVOKE_PASSWORD_CHANGE,
    REVOKE_PASSWORD_RESET,
    SessionManager,
)
from tenantgate.services.authz.decisions import ActorContext, Decision, ResourceRef
from tenantgate.services.authz.engine import AuthorizationEngine
from tenantgate.services.authz.guards import check_tenant
from tenantgate.services.authz.registry import (
    PLATFORM_ROLES,
    Permission,
    RoleName,
    normalize_role,
)
from tenantgate.services.notifications import KIND_PASSWORD_RESET, Notification, Notifier, deliver


logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fields a client may never set directly; tenant membership in particular is immutable.
PROTECTED_USER_FIELDS = frozenset(
    {
        "id",
        "organization_id",
        "password_hash",
        "is_active",
        "email_verified",
        "created_at",
        "updated_at",
    }
)
EDITABLE_USER_FIELDS = frozenset({"email", "first_name", "last_name", "role"})

PROTECTED_ORGANIZATION_FIELDS = frozenset({"id", "status", "created_at", "deleted_at", "owner_id"})
EDITABLE_ORGANIZATION_FIELDS = frozenset({"name"})

ORG_ACTIVE = "active"
ORG_DELETED = "deleted"


def normalize_email(email: str | None) -> str:
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email address", field="email")
    return normalized


def reject_protected_fields(
    changes: Mapping[str, Any],
    *,
    protected: frozenset[str],
    editable: frozenset[str],
) -> None:
    # Reject the whole update before any write when a protected field is present.
    for field in changes:
        if field in protected:
            raise ValidationError(f"Field '{field}' cannot be modified", field=field)
    for field in changes:
        if field not in editable:
            raise ValidationError(f"Unknown field '{field}'", field=field)


def _parse_role(value: Any, *, field: str = "role") -> RoleName:
    try:
        role = normalize_role(value)
    except ValueError as exc:
        raise ValidationError("Unsupported role", field=field) from exc
    if role in PLATFORM_ROLES:
        raise ValidationError("Role cannot be assigned within an organization", field=field)
    return role


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class SignupResult:
    organization: Organization
    user: User


@dataclass(frozen=True)
class IssuedInvitation:
    invitation: Invitation
    token: str


class IdentityService:
    """User, organization, invitation and password operations.

    Every operation on behalf of an actor is authorized through the decision
    engine; denials surface as ``AuthorizationError`` carrying the reason code.
    """

    def __init__(
        self,
        *,
        organizations: OrganizationStore,
        users: UserStore,
        invitations: InvitationStore,
        password_resets: PasswordResetStore,
        engine: AuthorizationEngine,
        sessions: SessionManager,
        audit: AuditLogger,
        invitation_ttl: timedelta,
        password_reset_ttl: timedelta,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._organizations = organizations
        self._users = users
        self._invitations = invitations
        self._password_resets = password_resets
        self._engine = engine
        self._sessions = sessions
        self._audit = audit
        self._invitation_ttl = invitation_ttl
        self._password_reset_ttl = password_reset_ttl
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _require(
        self,
        actor: ActorContext,
        permission: Permission,
        resource: ResourceRef | None = None,
        *,
        new_role: RoleName | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        decision: Decision = await self._engine.authorize(
            actor, permission, resource, new_role=new_role, context=context
        )
        if not decision.denied:
            return
        reason = decision.reason
        if resource is not None:
            # A foreign record is reported as foreign whichever step denied first, so
            # the status code never tells "exists elsewhere" apart from "missing".
            # The audit trail keeps the engine's own reason.
            tenant = check_tenant(actor, resource.organization_id, permission)
            if tenant.denied:
                reason = tenant.reason
        raise AuthorizationError(reason=reason.value if reason else None)

    async def _load_user(self, user_id: str) -> User:
        user = await self._users.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _load_organization(self, organization_id: str) -> Organization:
        organization = await self._organizations.get(organization_id)
        if organization is None or organization.status != ORG_ACTIVE:
            raise NotFoundError("Organization not found")
        return organization

    # Signup and users

    async def signup(
        self,
        *,
        organization_name: str,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> SignupResult:
        normalized = normalize_email(email)
        name = (organization_name or "").strip()
        if not name:
            raise ValidationError("Organization name is required", field="organization_name")
        validate_password_complexity(password)
        if await self._users.get_by_email(normalized) is not None:
            raise ConflictError("Email already registered")

        now = self._clock()
        organization = Organization(
            id=uuid4().hex, name=name, status=ORG_ACTIVE, created_at=now, deleted_at=None
        )
        await self._organizations.add(organization)
        owner = User(
            id=uuid4().hex,
            organization_id=organization.id,
            email=normalized,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            role=RoleName.OWNER.value,
            is_active=True,
            created_at=now,
        )
        try:
            await self._users.add(owner)
        except ConflictError:
            # A concurrent signup won the email; retire the orphaned tenant.
            organization.status = ORG_DELETED
            organization.deleted_at = now
            await self._organizations.save(organization)
            raise
        logger.info("organization_signup organization_id=%s user_id=%s", organization.id, owner.id)
        await self._audit.record_auth(
            "organization.signup",
            outcome=OUTCOME_ALLOW,
            user_id=owner.id,
            organization_id=organization.id,
            actor_role=owner.role,
        )
        return SignupResult(organization=organization, user=owner)

    async def get_me(self, actor: ActorContext) -> User:
        return await self._load_user(actor.user_id)

    async def create_user(
        self,
        actor: ActorContext,
        *,
        email: str,
        password: str,
        role: str,
        first_name: str | None = None,
        last_name: str | None = None,
        organization_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> User:
        target_org = organization_id or actor.organization_id
        new_role = _parse_role(role)
        await self._require(
            actor,
            Permission.USERS_CREATE,
            ResourceRef(resource_type="user", id=None, organization_id=target_org),
            new_role=new_role,
            context=context,
        )
        normalized = normalize_email(email)
        validate_password_complexity(password)
        await self._load_organization(target_org)
        user = User(
            id=uuid4().hex,
            organization_id=target_org,
            email=normalized,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            role=new_role.value,
            is_active=True,
            created_at=self._clock(),
        )
        await self._users.add(user)
        logger.info("user_created user_id=%s organization_id=%s role=%s", user.id, target_org, user.role)
        return user

    async def get_user(
        self,
        actor: ActorContext,
        user_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> User:
        user = await self._load_user(user_id)
        await self._require(actor, Permission.USERS_VIEW, ResourceRef.for_user(user), context=context)
        return user

    async def update_user(
        self,
        actor: ActorContext,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        context: dict[str, Any] | None = None,
    ) -> User:
        reject_protected_fields(
            changes, protected=PROTECTED_USER_FIELDS, editable=EDITABLE_USER_FIELDS
        )
        # Validate the payload before touching the target so malformed input
        # answers the same for every id.
        requested: RoleName | None = None
        if "role" in changes and changes["role"] is not None:
            requested = _parse_role(changes["role"])
        user = await self._load_user(user_id)
        new_role: RoleName | None = None
        if requested is not None and requested.value != user.role:
            new_role = requested
        await self._require(
            actor,
            Permission.USERS_EDIT,
            ResourceRef.for_user(user),
            new_role=new_role,
            context=context,
        )

        if "email" in changes and changes["email"] is not None:
            email = normalize_email(changes["email"])
            if email != user.email:
                existing = await self._users.get_by_email(email)
                if existing is not None:
                    raise ConflictError("Email already registered")
                user.email = email
        if "first_name" in changes:
            user.first_name = changes["first_name"]
        if "last_name" in changes:
            user.last_name = changes["last_name"]
        if new_role is not None:
            previous = user.role
            user.role = new_role.value
            logger.info(
                "user_role_changed user_id=%s from=%s to=%s actor_id=%s",
                user.id,
                previous,
                user.role,
                actor.user_id,
            )
        user.updated_at = self._clock()
        return await self._users.save(user)

    async def deactivate_user(
        self,
        actor: ActorContext,
        user_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> User:
        user = await self._load_user(user_id)
        await self._require(actor, Permission.USERS_DELETE, ResourceRef.for_user(user), context=context)
        user.is_active = False
        user.updated_at = self._clock()
        await self._users.save(user)
        await self._sessions.revoke_all(user.id, reason=REVOKE_DEACTIVATED)
        logger.info("user_deactivated user_id=%s actor_id=%s", user.id, actor.user_id)
        return user

    async def list_users(
        self,
        actor: ActorContext,
        organization_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> list[User]:
        await self._require(
            actor,
            Permission.USERS_VIEW,
            ResourceRef.for_organization(organization_id),
            context=context,
        )
        await self._load_organization(organization_id)
        return await self._users.list_by_organization(organization_id)

    # Organizations

    async def get_organization(
        self,
        actor: ActorContext,
        organization_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> Organization:
        decision = await self._engine.authorize_membership(actor, organization_id, context=context)
        if decision.denied:
            raise AuthorizationError(reason=decision.reason.value if decision.reason else None)
        return await self._load_organization(organization_id)

    async def update_organization(
        self,
        actor: ActorContext,
        organization_id: str,
        changes: Mapping[str, Any],
        *,
        context: dict[str, Any] | None = None,
    ) -> Organization:
        reject_protected_fields(
            changes,
            protected=PROTECTED_ORGANIZATION_FIELDS,
            editable=EDITABLE_ORGANIZATION_FIELDS,
        )
        await self._require(
            actor,
            Permission.ORGANIZATION_EDIT,
            ResourceRef.for_organization(organization_id),
            context=context,
        )
        organization = await self._load_organization(organization_id)
        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise ValidationError("Organization name is required", field="name")
            organization.name = name
        return await self._organizations.save(organization)

    async def delete_organization(
        self,
        actor: ActorContext,
        organization_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> Organization:
        await self._require(
            actor,
            Permission.ORGANIZATION_DELETE,
            ResourceRef.for_organization(organization_id),
            context=context,
        )
        organization = await self._load_organization(organization_id)
        now = self._clock()
        organization.status = ORG_DELETED
        organization.deleted_at = now
        await self._organizations.save(organization)
        # Soft delete: members are deactivated so no new session can be minted.
        for user in await self._users.list_by_organization(organization_id):
            if user.is_active:
                user.is_active = False
                user.updated_at = now
                await self._users.save(user)
        await self._sessions.revoke_organization(organization_id, reason=REVOKE_ORGANIZATION_DELETED)
        logger.info("organization_deleted organization_id=%s actor_id=%s", organization_id, actor.user_id)
        return organization

    async def transfer_ownership(
        self,
        actor: ActorContext,
        organization_id: str,
        new_owner_id: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> User:
        await self._require(
            actor,
            Permission.ORGANIZATION_TRANSFER,
            ResourceRef.for_organization(organization_id),
            context=context,
        )
        await self._load_organization(organization_id)
        new_owner = await self._users.get(new_owner_id)
        if new_owner is None or new_owner.organization_id != organization_id:
            raise NotFoundError("User not found")
        if not new_owner.is_active:
            raise ValidationError("New owner must be an active user", field="new_owner_id")
        if new_owner.role == RoleName.OWNER.value:
            raise ValidationError("User is already an owner", field="new_owner_id")

        now = self._clock()
        for member in await self._users.list_by_organization(organization_id):
            if member.role == RoleName.OWNER.value:
                member.role = RoleName.ADMIN.value
                member.updated_at = now
                await self._users.save(member)
        new_owner.role = RoleName.OWNER.value
        new_owner.updated_at = now
        await self._users.save(new_owner)
        logger.info(
            "organization_transferred organization_id=%s new_owner_id=%s actor_id=%s",
            organization_id,
            new_owner.id,
            actor.user_id,
        )
        return new_owner

    # Invitations

    async def invite(
        self,
        actor: ActorContext,
        *,
        email: str,
        role: str,
        context: dict[str, Any] | None = None,
    ) -> IssuedInvitation:
        new_role = _parse_role(role)
        await self._require(
            actor,
            Permission.USERS_CREATE,
            ResourceRef(resource_type="invitation", id=None, organization_id=actor.organization_id),
            new_role=new_role,
            context=context,
        )
        normalized = normalize_email(email)
        if await self._users.get_by_email(normalized) is not None:
            raise ConflictError("Email already registered")
        now = self._clock()
        raw_token = generate_token()
        invitation = Invitation(
            id=uuid4().hex,
            organization_id=actor.organization_id,
            email=normalized,
            role=new_role.value,
            token_hash=hash_token(raw_token),
            invited_by=actor.user_id,
            expires_at=now + self._invitation_ttl,
            accepted_at=None,
            revoked_at=None,
            created_at=now,
        )
        await self._invitations.add(invitation)
        logger.info(
            "invitation_created invitation_id=%s organization_id=%s role=%s",
            invitation.id,
            invitation.organization_id,
            invitation.role,
        )
        return IssuedInvitation(invitation=invitation, token=raw_token)

    async def accept_invitation(
        self,
        *,
        token: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        invitation = await self._invitations.get_by_token_hash(hash_token(token or ""))
        now = self._clock()
        if (
            invitation is None
            or invitation.accepted_at is not None
            or invitation.revoked_at is not None
            or now > _as_utc(invitation.expires_at)
        ):
            raise ValidationError("Invalid or expired invitation", field="token")
        validate_password_complexity(password)
        await self._load_organization(invitation.organization_id)
        if not await self._invitations.mark_accepted(invitation.id, at=now):
            raise ValidationError("Invalid or expired invitation", field="token")
        user = User(
            id=uuid4().hex,
            organization_id=invitation.organization_id,
            email=invitation.email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            role=invitation.role,
            is_active=True,
            created_at=now,
        )
        await self._users.add(user)
        await self._audit.record_auth(
            "invitation.accepted",
            outcome=OUTCOME_ALLOW,
            user_id=user.id,
            organization_id=user.organization_id,
            actor_role=user.role,
            metadata={"invitation_id": invitation.id},
        )
        return user

    # Passwords

    async def change_password(
        self,
        actor: ActorContext,
        *,
        current_password: str,
        new_password: str,
    ) -> int:
        user = await self._load_user(actor.user_id)
        if not verify_password(user.password_hash, current_password):
            raise ValidationError("Current password is incorrect", field="current_password")
        validate_password_complexity(new_password, field="new_password")
        if current_password == new_password:
            raise ValidationError(
                "New password must differ from the current password", field="new_password"
            )
        user.password_hash = hash_password(new_password)
        user.updated_at = self._clock()
        await self._users.save(user)
        # Every session, the current one included, must re-authenticate.
        return await self._sessions.revoke_all(user.id, reason=REVOKE_PASSWORD_CHANGE)

    async def request_password_reset(self, email: str) -> str | None:
        """Mint a single-use reset token, or ``None`` for unknown or inactive accounts.

        Callers must respond identically in both cases so the endpoint does not
        reveal which emails are registered.
        """
        try:
            normalized = normalize_email(email)
        except ValidationError:
            return None
        user = await self._users.get_by_email(normalized)
        if user is None or not user.is_active:
            return None
        now = self._clock()
        raw_token = generate_token()
        await self._password_resets.add(
            PasswordResetToken(
                id=uuid4().hex,
                user_id=user.id,
                token_hash=hash_token(raw_token),
                expires_at=now + self._password_reset_ttl,
                used_at=None,
                created_at=now,
            )
        )
        await self._audit.record_auth(
            "auth.password.reset_requested",
            outcome=OUTCOME_ALLOW,
            user_id=user.id,
            organization_id=user.organization_id,
        )
        if self._notifier is not None:
            await deliver(
                self._notifier,
                Notification(
                    kind=KIND_PASSWORD_RESET,
                    recipient=user.email,
                    token=raw_token,
                    expires_at=now + self._password_reset_ttl,
                    user_id=user.id,
                    organization_id=user.organization_id,
                ),
            )
        return raw_token

    async def reset_password(self, *, token: str, new_password: str) -> int:
        row = await self._password_resets.get_by_token_hash(hash_token(token or ""))
        now = self._clock()
        if row is None or row.used_at is not None or now > _as_utc(row.expires_at):
            raise ValidationError("Invalid or expired reset token", field="token")
        validate_password_complexity(new_password, field="new_password")
        user = await self._users.get(row.user_id)
        if user is None or not user.is_active:
            raise ValidationError("Invalid or expired reset token", field="token")
        if not await self._password_resets.mark_used(row.id, at=now):
            raise ValidationError("Invalid or expired reset token", field="token")
        user.password_hash = hash_password(new_password)
        user.updated_at = now
        await self._users.save(user)
        await self._audit.record_auth(
            "auth.password.reset",
            outcome=OUTCOME_ALLOW,
            user_id=user.id,
            organization_id=user.organization_id,
        )
        return await self._sessions.revoke_all(user.id, reason=REVOKE_PASSWORD_RESET)
