from __future__ import annotations

from dataclasses import dataclass
import logging

from tenantgate.core.errors import AuthenticationError, RateLimitError
from tenantgate.domain.models import User
from tenantgate.persistence.stores import UserStore
from tenantgate.services.audit import OUTCOME_ALLOW, OUTCOME_DENY, AuditLogger
from tenantgate.services.auth.lockout import (
    LockoutService,
    LockoutState,
    LockoutStatus,
    email_identifier,
    ip_identifier,
)
from tenantgate.services.auth.passwords import verify_password
from tenantgate.services.auth.sessions import IssuedSession, SessionManager


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginResult:
    user: User
    issued: IssuedSession

    @property
    def token(self) -> str:
        return self.issued.token


def _retry_after(statuses: list[LockoutStatus]) -> int | None:
    # Hard locks have no retry horizon; otherwise report the longest remaining soft lock.
    if any(status.state == LockoutState.HARD_LOCKED for status in statuses):
        return None
    values = [status.retry_after_s for status in statuses if status.retry_after_s]
    return max(values) if values else None


class LoginService:
    """Credential login guarded by the lockout state machine.

    Both the email and the client address are tracked. Unknown users, wrong
    passwords and inactive users fail identically.
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionManager,
        lockout: LockoutService,
        audit: AuditLogger,
    ) -> None:
        self._users = users
        self._sessions = sessions
        self._lockout = lockout
        self._audit = audit

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        identifiers = [email_identifier(email)]
        if ip_address:
            identifiers.append(ip_identifier(ip_address))

        statuses = [await self._lockout.check(identifier) for identifier in identifiers]
        blocked = [status for status in statuses if status.blocked]
        if blocked:
            # Blocked attempts never reach credential verification and are not counted.
            await self._audit.record_auth(
                "auth.login",
                outcome=OUTCOME_DENY,
                reason="LOCKED_OUT",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"identifiers": [status.identifier for status in blocked]},
            )
            raise RateLimitError(retry_after_s=_retry_after(blocked))

        user = await self._users.get_by_email(email)
        valid = verify_password(user.password_hash if user else None, password)
        if user is None or not valid or not user.is_active:
            for identifier in identifiers:
                if user is not None and identifier == identifiers[0]:
                    # Only a registered address may receive an unlock link.
                    await self._lockout.record_failure(
                        identifier,
                        recipient=user.email,
                        user_id=user.id,
                        organization_id=user.organization_id,
                    )
                else:
                    await self._lockout.record_failure(identifier)
            logger.info("login_failed email_identifier=%s", identifiers[0])
            await self._audit.record_auth(
                "auth.login",
                outcome=OUTCOME_DENY,
                reason="INVALID_CREDENTIALS",
                user_id=user.id if user else None,
                organization_id=user.organization_id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthenticationError("Invalid email or password")

        for identifier in identifiers:
            await self._lockout.record_success(identifier)
        issued = await self._sessions.issue(
            user,
            user.organization_id,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        await self._audit.record_auth(
            "auth.login",
            outcome=OUTCOME_ALLOW,
            user_id=user.id,
            organization_id=user.organization_id,
            actor_role=user.role,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return LoginResult(user=user, issued=issued)
