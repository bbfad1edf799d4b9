from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable
from uuid import uuid4

import jwt

from tenantgate.core.errors import AuthenticationError, AuthorizationError
from tenantgate.domain.models import AuthSession, User
from tenantgate.persistence.stores import SessionStore, UserStore
from tenantgate.services.audit import OUTCOME_ALLOW, OUTCOME_DENY, AuditLogger
from tenantgate.services.authz.decisions import ActorContext, Decision, DenyReason
from tenantgate.services.authz.registry import normalize_role


logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "org", "sid", "iat", "exp", "iss"]

REVOKE_LOGOUT = "logout"
REVOKE_LOGOUT_OTHERS = "logout_others"
REVOKE_PASSWORD_CHANGE = "password_change"
REVOKE_PASSWORD_RESET = "password_reset"
REVOKE_DEACTIVATED = "user_deactivated"
REVOKE_ORGANIZATION_DELETED = "organization_deleted"
REVOKE_OPERATOR = "operator"


def _utc_now() -> datetime:
    # Keep session timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Some drivers hand back naive timestamps; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session: AuthSession


@dataclass(frozen=True)
class SessionCheck:
    decision: Decision
    actor: ActorContext | None = None
    session: AuthSession | None = None
    claims: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.decision.allowed


def _fail(reason: DenyReason, claims: dict[str, Any] | None = None) -> SessionCheck:
    return SessionCheck(decision=Decision.deny(reason), claims=claims)


class SessionManager:
    """Issues and validates signed session tokens backed by stored session rows.

    The token proves who minted it; the row decides whether it is still good.
    Revoking a row invalidates the token immediately even though its ``exp``
    claim has not passed.
    """

    def __init__(
        self,
        sessions: SessionStore,
        users: UserStore,
        audit: AuditLogger,
        *,
        secret: str,
        issuer: str,
        ttl: timedelta,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = sessions
        self._users = users
        self._audit = audit
        self._secret = secret
        self._issuer = issuer
        self._ttl = ttl
        self._clock = clock or _utc_now

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        sessions: SessionStore,
        users: UserStore,
        audit: AuditLogger,
        clock: Callable[[], datetime] | None = None,
    ) -> SessionManager:
        return cls(
            sessions,
            users,
            audit,
            secret=settings.session_secret,
            issuer=settings.session_issuer,
            ttl=timedelta(hours=settings.session_ttl_hours),
            clock=clock,
        )

    def _encode(self, session: AuthSession) -> str:
        claims = {
            "sub": session.user_id,
            "org": session.organization_id,
            "sid": session.id,
            "iat": int(session.issued_at.timestamp()),
            "exp": int(session.expires_at.timestamp()),
            "iss": self._issuer,
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def _decode(self, token: str) -> dict[str, Any]:
        # Expiry is judged against the stored row with the injected clock, not wall time.
        return jwt.decode(
            token,
            self._secret,
            algorithms=[_ALGORITHM],
            issuer=self._issuer,
            options={"verify_exp": False, "verify_iat": False, "require": _REQUIRED_CLAIMS},
        )

    async def issue(
        self,
        user: User,
        organization_id: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> IssuedSession:
        if user.organization_id != organization_id:
            raise AuthorizationError(reason=DenyReason.CROSS_TENANT.value)
        if not user.is_active:
            raise AuthenticationError()
        # Drop sub-second precision so the row and the integer claims agree.
        now = self._clock().replace(microsecond=0)
        row = AuthSession(
            id=uuid4().hex,
            user_id=user.id,
            organization_id=organization_id,
            issued_at=now,
            expires_at=now + self._ttl,
            revoked_at=None,
            revoke_reason=None,
            last_seen_at=None,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        await self._sessions.add(row)
        logger.info("session_issued user_id=%s session_id=%s", user.id, row.id)
        await self._audit.record_auth(
            "auth.session.issued",
            outcome=OUTCOME_ALLOW,
            user_id=user.id,
            organization_id=organization_id,
            actor_role=user.role,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_id": row.id},
        )
        return IssuedSession(token=self._encode(row), session=row)

    async def validate(self, token: str | None) -> SessionCheck:
        if not token:
            return _fail(DenyReason.MISSING_TOKEN)
        try:
            claims = self._decode(token)
        except jwt.InvalidTokenError:
            return _fail(DenyReason.INVALID_SIGNATURE)

        row = await self._sessions.get(str(claims["sid"]))
        now = self._clock()
        if row is None or row.revoked_at is not None or now > _as_utc(row.expires_at):
            return _fail(DenyReason.EXPIRED_OR_REVOKED, claims)
        if row.user_id != claims["sub"] or row.organization_id != claims["org"]:
            return _fail(DenyReason.INVALID_SIGNATURE, claims)

        user = await self._users.get(row.user_id)
        if (
            user is None
            or not user.is_active
            or user.organization_id != row.organization_id
        ):
            return _fail(DenyReason.INACTIVE_USER, claims)
        try:
            role = normalize_role(user.role)
        except ValueError:
            return _fail(DenyReason.INACTIVE_USER, claims)

        await self._sessions.touch(row.id, at=now)
        actor = ActorContext(
            user_id=user.id,
            organization_id=row.organization_id,
            role=role,
            session_id=row.id,
        )
        return SessionCheck(decision=Decision.allow(), actor=actor, session=row, claims=claims)

    async def authenticate(
        self,
        token: str | None,
        *,
        context: dict[str, Any] | None = None,
    ) -> ActorContext:
        check = await self.validate(token)
        if check.ok and check.actor is not None:
            return check.actor
        context = context or {}
        claims = check.claims or {}
        reason = check.decision.reason.value if check.decision.reason else None
        await self._audit.record(
            action="auth.session.rejected",
            outcome=OUTCOME_DENY,
            reason=reason,
            organization_id=claims.get("org"),
            actor_id=claims.get("sub"),
            request_id=context.get("request_id"),
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
        )
        raise AuthenticationError()

    async def revoke(self, session_id: str, *, reason: str = REVOKE_LOGOUT) -> bool:
        revoked = await self._sessions.revoke(session_id, at=self._clock(), reason=reason)
        if revoked:
            logger.info("session_revoked session_id=%s reason=%s", session_id, reason)
        return revoked

    async def revoke_all_except(
        self,
        user_id: str,
        current_session_id: str,
        *,
        reason: str = REVOKE_LOGOUT_OTHERS,
    ) -> int:
        count = await self._sessions.revoke_for_user(
            user_id,
            at=self._clock(),
            reason=reason,
            except_session_id=current_session_id,
        )
        logger.info("sessions_revoked user_id=%s count=%s reason=%s", user_id, count, reason)
        return count

    async def revoke_all(self, user_id: str, *, reason: str) -> int:
        count = await self._sessions.revoke_for_user(user_id, at=self._clock(), reason=reason)
        logger.info("sessions_revoked user_id=%s count=%s reason=%s", user_id, count, reason)
        await self._audit.record_auth(
            "auth.session.revoked_all",
            outcome=OUTCOME_ALLOW,
            user_id=user_id,
            metadata={"count": count, "revoke_reason": reason},
        )
        return count

    async def revoke_organization(self, organization_id: str, *, reason: str) -> int:
        count = await self._sessions.revoke_for_organization(
            organization_id, at=self._clock(), reason=reason
        )
        logger.info(
            "sessions_revoked organization_id=%s count=%s reason=%s",
            organization_id,
            count,
            reason,
        )
        return count
