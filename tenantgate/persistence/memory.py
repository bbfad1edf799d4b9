from __future__ import annotations

from datetime import datetime, timedelta
import threading

from tenantgate.core.errors import ConflictError
from tenantgate.domain.lockout import AttemptRecord, LockoutPolicy, apply_failure
from tenantgate.domain.models import (
    AuditEvent,
    AuthSession,
    Invitation,
    Organization,
    PasswordResetToken,
    User,
)
from tenantgate.domain.throttle import BucketConfig, BucketDecision, BucketState, take


class InMemoryOrganizationStore:
    def __init__(self) -> None:
        self._rows: dict[str, Organization] = {}
        self._lock = threading.Lock()

    async def add(self, organization: Organization) -> Organization:
        with self._lock:
            if organization.id in self._rows:
                raise ConflictError("Organization already exists")
            self._rows[organization.id] = organization
        return organization

    async def get(self, organization_id: str) -> Organization | None:
        return self._rows.get(organization_id)

    async def save(self, organization: Organization) -> Organization:
        with self._lock:
            self._rows[organization.id] = organization
        return organization


class InMemoryUserStore:
    def __init__(self) -> None:
        self._rows: dict[str, User] = {}
        self._emails: dict[str, str] = {}
        # The lock plays the role of the SQL unique index on users.email.
        self._lock = threading.Lock()

    async def add(self, user: User) -> User:
        email = user.email.lower()
        with self._lock:
            if email in self._emails or user.id in self._rows:
                raise ConflictError("Email already registered")
            self._emails[email] = user.id
            self._rows[user.id] = user
        return user

    async def get(self, user_id: str) -> User | None:
        return self._rows.get(user_id)

    async def get_by_email(self, email: str) -> User | None:
        user_id = self._emails.get(email.strip().lower())
        return self._rows.get(user_id) if user_id else None

    async def save(self, user: User) -> User:
        email = user.email.lower()
        with self._lock:
            holder = self._emails.get(email)
            if holder is not None and holder != user.id:
                raise ConflictError("Email already registered")
            # Drop the previous address so it no longer resolves to this user.
            for stale in [key for key, owner in self._emails.items() if owner == user.id and key != email]:
                del self._emails[stale]
            self._emails[email] = user.id
            self._rows[user.id] = user
        return user

    async def list_by_organization(self, organization_id: str) -> list[User]:
        return sorted(
            (user for user in self._rows.values() if user.organization_id == organization_id),
            key=lambda user: user.email,
        )


class InMemorySessionStore:
    def __init__(self) -> None:
        self._rows: dict[str, AuthSession] = {}
        self._lock = threading.Lock()

    async def add(self, session: AuthSession) -> AuthSession:
        with self._lock:
            self._rows[session.id] = session
        return session

    async def get(self, session_id: str) -> AuthSession | None:
        return self._rows.get(session_id)

    async def touch(self, session_id: str, *, at: datetime) -> None:
        row = self._rows.get(session_id)
        if row is not None:
            row.last_seen_at = at

    async def revoke(self, session_id: str, *, at: datetime, reason: str) -> bool:
        with self._lock:
            row = self._rows.get(session_id)
            if row is None or row.revoked_at is not None:
                return False
            row.revoked_at = at
            row.revoke_reason = reason
            return True

    async def revoke_for_user(
        self,
        user_id: str,
        *,
        at: datetime,
        reason: str,
        except_session_id: str | None = None,
    ) -> int:
        revoked = 0
        with self._lock:
            for row in self._rows.values():
                if row.user_id != user_id or row.id == except_session_id:
                    continue
                if row.revoked_at is None:
                    row.revoked_at = at
                    row.revoke_reason = reason
                    revoked += 1
        return revoked

    async def revoke_for_organization(
        self, organization_id: str, *, at: datetime, reason: str
    ) -> int:
        revoked = 0
        with self._lock:
            for row in self._rows.values():
                if row.organization_id == organization_id and row.revoked_at is None:
                    row.revoked_at = at
                    row.revoke_reason = reason
                    revoked += 1
        return revoked


class InMemoryInvitationStore:
    def __init__(self) -> None:
        self._rows: dict[str, Invitation] = {}
        self._lock = threading.Lock()

    async def add(self, invitation: Invitation) -> Invitation:
        with self._lock:
            self._rows[invitation.id] = invitation
        return invitation

    async def get_by_token_hash(self, token_hash: str) -> Invitation | None:
        for row in self._rows.values():
            if row.token_hash == token_hash:
                return row
        return None

    async def mark_accepted(self, invitation_id: str, *, at: datetime) -> bool:
        with self._lock:
            row = self._rows.get(invitation_id)
            if row is None or row.accepted_at is not None or row.revoked_at is not None:
                return False
            row.accepted_at = at
            return True


class InMemoryPasswordResetStore:
    def __init__(self) -> None:
        self._rows: dict[str, PasswordResetToken] = {}
        self._lock = threading.Lock()

    async def add(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._lock:
            self._rows[token.id] = token
        return token

    async def get_by_token_hash(self, token_hash: str) -> PasswordResetToken | None:
        for row in self._rows.values():
            if row.token_hash == token_hash:
                return row
        return None

    async def mark_used(self, token_id: str, *, at: datetime) -> bool:
        with self._lock:
            row = self._rows.get(token_id)
            if row is None or row.used_at is not None:
                return False
            row.used_at = at
            return True


class InMemoryCounterStore:
    def __init__(self) -> None:
        self._rows: dict[str, AttemptRecord] = {}
        self._buckets: dict[str, BucketState] = {}
        self._consumed: dict[str, datetime] = {}
        # Read-modify-write happens entirely under the lock, so increments are atomic.
        self._lock = threading.Lock()

    async def record_failure(
        self, identifier: str, *, now: datetime, policy: LockoutPolicy
    ) -> AttemptRecord:
        with self._lock:
            record = apply_failure(
                self._rows.get(identifier), identifier=identifier, now=now, policy=policy
            )
            self._rows[identifier] = record
            return record

    async def get(self, identifier: str) -> AttemptRecord | None:
        return self._rows.get(identifier)

    async def reset(self, identifier: str) -> None:
        with self._lock:
            self._rows.pop(identifier, None)

    async def take_token(
        self, key: str, *, now: datetime, config: BucketConfig, cost: int = 1
    ) -> BucketDecision:
        now_ms = int(now.timestamp() * 1000)
        with self._lock:
            state, decision = take(self._buckets.get(key), now_ms=now_ms, config=config, cost=cost)
            self._buckets[key] = state
            return decision

    async def consume_once(self, key: str, *, now: datetime, ttl: timedelta) -> bool:
        with self._lock:
            for expired in [marker for marker, until in self._consumed.items() if until <= now]:
                del self._consumed[expired]
            if key in self._consumed:
                return False
            self._consumed[key] = now + ttl
            return True


class InMemoryAuditSink:
    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    async def append(self, event: AuditEvent) -> None:
        with self._lock:
            event.id = len(self._events) + 1
            self._events.append(event)

    @property
    def events(self) -> tuple[AuditEvent, ...]:
        # Expose a read-only snapshot; entries are never mutated after append.
        return tuple(self._events)
