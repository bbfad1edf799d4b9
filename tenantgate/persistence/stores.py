"""Store interfaces injected into the auth services.

Production wiring uses the SQLAlchemy repos and the Redis counter store; tests
swap in the isolated in-memory implementations from ``persistence.memory``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from tenantgate.domain.lockout import AttemptRecord, LockoutPolicy
from tenantgate.domain.models import (
    AuditEvent,
    AuthSession,
    Invitation,
    Organization,
    PasswordResetToken,
    User,
)
from tenantgate.domain.throttle import BucketConfig, BucketDecision


class OrganizationStore(Protocol):
    async def add(self, organization: Organization) -> Organization: ...

    async def get(self, organization_id: str) -> Organization | None: ...

    async def save(self, organization: Organization) -> Organization: ...


class UserStore(Protocol):
    # `add` and `save` raise ConflictError when the email is taken, using a storage-level guarantee.
    async def add(self, user: User) -> User: ...

    async def get(self, user_id: str) -> User | None: ...

    async def get_by_email(self, email: str) -> User | None: ...

    async def save(self, user: User) -> User: ...

    async def list_by_organization(self, organization_id: str) -> list[User]: ...


class SessionStore(Protocol):
    async def add(self, session: AuthSession) -> AuthSession: ...

    async def get(self, session_id: str) -> AuthSession | None: ...

    async def touch(self, session_id: str, *, at: datetime) -> None: ...

    async def revoke(self, session_id: str, *, at: datetime, reason: str) -> bool: ...

    async def revoke_for_user(
        self,
        user_id: str,
        *,
        at: datetime,
        reason: str,
        except_session_id: str | None = None,
    ) -> int: ...

    async def revoke_for_organization(
        self, organization_id: str, *, at: datetime, reason: str
    ) -> int: ...


class InvitationStore(Protocol):
    async def add(self, invitation: Invitation) -> Invitation: ...

    async def get_by_token_hash(self, token_hash: str) -> Invitation | None: ...

    # Atomically flip a pending invitation to accepted; False if it was already consumed.
    async def mark_accepted(self, invitation_id: str, *, at: datetime) -> bool: ...


class PasswordResetStore(Protocol):
    async def add(self, token: PasswordResetToken) -> PasswordResetToken: ...

    async def get_by_token_hash(self, token_hash: str) -> PasswordResetToken | None: ...

    async def mark_used(self, token_id: str, *, at: datetime) -> bool: ...


class CounterStore(Protocol):
    # `record_failure` must be atomic per identifier; concurrent calls never under-count.
    async def record_failure(
        self, identifier: str, *, now: datetime, policy: LockoutPolicy
    ) -> AttemptRecord: ...

    async def get(self, identifier: str) -> AttemptRecord | None: ...

    async def reset(self, identifier: str) -> None: ...

    # Token-bucket throttle for unauthenticated and abuse-prone routes.
    async def take_token(
        self, key: str, *, now: datetime, config: BucketConfig, cost: int = 1
    ) -> BucketDecision: ...

    # Record a single-use marker; False when it was already consumed.
    async def consume_once(self, key: str, *, now: datetime, ttl: timedelta) -> bool: ...


class AuditSink(Protocol):
    # Append-only; implementations never expose update or delete.
    async def append(self, event: AuditEvent) -> None: ...
