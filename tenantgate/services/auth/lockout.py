from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import math
from typing import Callable
from uuid import uuid4

import jwt

from tenantgate.core.errors import ValidationError
from tenantgate.domain.lockout import AttemptRecord, LockoutPolicy, is_stale
from tenantgate.persistence.stores import CounterStore
from tenantgate.services.audit import OUTCOME_ALLOW, OUTCOME_DENY, AuditLogger
from tenantgate.services.notifications import KIND_LOGIN_UNLOCK, Notification, Notifier, deliver


logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
UNLOCK_PURPOSE = "login_unlock"


class LockoutState(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    LOCKED = "locked"
    HARD_LOCKED = "hard_locked"


@dataclass(frozen=True)
class LockoutStatus:
    identifier: str
    state: LockoutState
    attempts: int = 0
    locked_until: datetime | None = None
    retry_after_s: int | None = None

    @property
    def blocked(self) -> bool:
        return self.state in {LockoutState.LOCKED, LockoutState.HARD_LOCKED}


def email_identifier(email: str) -> str:
    return f"email:{email.strip().lower()}"


def ip_identifier(ip_address: str) -> str:
    return f"ip:{ip_address.strip()}"


def status_for(
    record: AttemptRecord | None,
    *,
    identifier: str,
    now: datetime,
    policy: LockoutPolicy,
) -> LockoutStatus:
    # Map a raw counter onto the NORMAL/WARNING/LOCKED/HARD_LOCKED states.
    if record is None or is_stale(record, now, policy):
        return LockoutStatus(identifier=identifier, state=LockoutState.NORMAL)
    if record.hard_locked:
        return LockoutStatus(
            identifier=identifier, state=LockoutState.HARD_LOCKED, attempts=record.count
        )
    if record.lock_until is not None and record.lock_until > now:
        retry_after = max(1, math.ceil((record.lock_until - now).total_seconds()))
        return LockoutStatus(
            identifier=identifier,
            state=LockoutState.LOCKED,
            attempts=record.count,
            locked_until=record.lock_until,
            retry_after_s=retry_after,
        )
    if record.count > 0:
        return LockoutStatus(identifier=identifier, state=LockoutState.WARNING, attempts=record.count)
    return LockoutStatus(identifier=identifier, state=LockoutState.NORMAL)


class LockoutService:
    def __init__(
        self,
        counters: CounterStore,
        audit: AuditLogger,
        *,
        policy: LockoutPolicy,
        secret: str,
        issuer: str,
        unlock_token_ttl: timedelta,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._counters = counters
        self._audit = audit
        self._policy = policy
        self._secret = secret
        self._issuer = issuer
        self._unlock_token_ttl = unlock_token_ttl
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        counters: CounterStore,
        audit: AuditLogger,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> LockoutService:
        return cls(
            counters,
            audit,
            policy=LockoutPolicy.from_settings(settings),
            secret=settings.session_secret,
            issuer=settings.session_issuer,
            unlock_token_ttl=timedelta(seconds=settings.unlock_token_ttl_seconds),
            notifier=notifier,
            clock=clock,
        )

    @property
    def policy(self) -> LockoutPolicy:
        return self._policy

    async def check(self, identifier: str) -> LockoutStatus:
        record = await self._counters.get(identifier)
        return status_for(record, identifier=identifier, now=self._clock(), policy=self._policy)

    async def record_failure(
        self,
        identifier: str,
        *,
        recipient: str | None = None,
        user_id: str | None = None,
        organization_id: str | None = None,
    ) -> LockoutStatus:
        """Count one failed attempt.

        ``recipient`` is the registered address behind the identifier; when the
        failure crosses the hard threshold an unlock token is sent there.
        """
        now = self._clock()
        record = await self._counters.record_failure(identifier, now=now, policy=self._policy)
        status = status_for(record, identifier=identifier, now=now, policy=self._policy)
        if record.count == self._policy.soft_threshold or record.count == self._policy.hard_threshold:
            logger.warning(
                "login_lockout identifier=%s state=%s attempts=%s",
                identifier,
                status.state.value,
                record.count,
            )
            await self._audit.record(
                action=f"auth.lockout.{status.state.value}",
                outcome=OUTCOME_DENY,
                reason="LOCKOUT",
                target_type="login_identifier",
                target_id=identifier,
                metadata={"attempts": record.count},
            )
        # Blocked attempts are never counted, so the threshold is crossed exactly once per lock.
        if record.count == self._policy.hard_threshold and recipient and self._notifier is not None:
            await deliver(
                self._notifier,
                Notification(
                    kind=KIND_LOGIN_UNLOCK,
                    recipient=recipient,
                    token=self.issue_unlock_token(identifier),
                    expires_at=now + self._unlock_token_ttl,
                    user_id=user_id,
                    organization_id=organization_id,
                ),
            )
        return status

    async def record_success(self, identifier: str) -> None:
        await self._counters.reset(identifier)

    def issue_unlock_token(self, identifier: str) -> str:
        # Single-purpose signed token, delivered out of band (e.g. email).
        now = self._clock()
        claims = {
            "sub": identifier,
            "purpose": UNLOCK_PURPOSE,
            "jti": uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + self._unlock_token_ttl).timestamp()),
            "iss": self._issuer,
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    async def unlock(self, token: str) -> str:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "exp", "purpose", "jti"],
                },
            )
        except jwt.InvalidTokenError as exc:
            raise ValidationError("Invalid unlock token", field="token") from exc
        if claims.get("purpose") != UNLOCK_PURPOSE:
            raise ValidationError("Invalid unlock token", field="token")
        now = self._clock()
        expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        if expires_at < now:
            raise ValidationError("Unlock token expired", field="token")
        # The marker lives as long as the token could still verify.
        ttl = max(expires_at - now, timedelta(seconds=1))
        if not await self._counters.consume_once(f"unlock:{claims['jti']}", now=now, ttl=ttl):
            raise ValidationError("Unlock token already used", field="token")
        identifier = str(claims["sub"])
        await self.force_unlock(identifier, via="token")
        return identifier

    async def force_unlock(self, identifier: str, *, via: str = "operator") -> None:
        await self._counters.reset(identifier)
        logger.info("login_unlocked identifier=%s via=%s", identifier, via)
        await self._audit.record(
            action="auth.lockout.unlocked",
            outcome=OUTCOME_ALLOW,
            target_type="login_identifier",
            target_id=identifier,
            metadata={"via": via},
        )
