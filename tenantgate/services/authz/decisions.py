from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from tenantgate.services.authz.registry import RoleName, normalize_role


class DenyReason(str, Enum):
    NOT_GRANTED = "NOT_GRANTED"
    SELF_SCOPE_VIOLATION = "SELF_SCOPE_VIOLATION"
    CROSS_TENANT = "CROSS_TENANT"
    SYSTEM_RESOURCE_READ_ONLY = "SYSTEM_RESOURCE_READ_ONLY"
    PRIVILEGE_RANK_VIOLATION = "PRIVILEGE_RANK_VIOLATION"
    ROLE_ASSIGNMENT_VIOLATION = "ROLE_ASSIGNMENT_VIOLATION"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED_OR_REVOKED = "EXPIRED_OR_REVOKED"
    INACTIVE_USER = "INACTIVE_USER"
    MISSING_TOKEN = "MISSING_TOKEN"


# Reasons produced by the tenant guard; the API masks these per endpoint class.
TENANT_REASONS = frozenset({DenyReason.CROSS_TENANT, DenyReason.SYSTEM_RESOURCE_READ_ONLY})


@dataclass(frozen=True)
class Decision:
    # Sum type Allow | Deny(reason); callers must branch on `allowed`.
    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> Decision:
        return _ALLOW

    @classmethod
    def deny(cls, reason: DenyReason) -> Decision:
        return cls(allowed=False, reason=reason)

    @property
    def denied(self) -> bool:
        return not self.allowed


_ALLOW = Decision(allowed=True)


@dataclass(frozen=True)
class ActorContext:
    # Authenticated identity bound to exactly one organization for the session lifetime.
    user_id: str
    organization_id: str
    role: RoleName
    session_id: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == RoleName.SUPER_ADMIN


@dataclass(frozen=True)
class ResourceRef:
    """Target of a request as seen by the decision engine.

    ``organization_id`` is ``None`` for system-wide resources. ``role`` is the
    current role of a target user and enables the privilege-rank step.
    """

    resource_type: str
    id: str | None
    organization_id: str | None
    role: RoleName | None = None

    @classmethod
    def for_user(cls, user) -> ResourceRef:
        # Build a target reference from a stored user row.
        return cls(
            resource_type="user",
            id=user.id,
            organization_id=user.organization_id,
            role=normalize_role(user.role),
        )

    @classmethod
    def for_organization(cls, organization_id: str) -> ResourceRef:
        return cls(resource_type="organization", id=organization_id, organization_id=organization_id)
