from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Mapping

from tenantgate.core.errors import RateLimitError, StoreUnavailableError
from tenantgate.domain.throttle import BucketConfig, BucketDecision
from tenantgate.persistence.stores import CounterStore
from tenantgate.services.audit import OUTCOME_DENY, AuditLogger


logger = logging.getLogger(__name__)

ROUTE_CLASS_SIGNUP = "signup"
ROUTE_CLASS_PASSWORD_RESET = "password_reset"
ROUTE_CLASS_TOKEN_REDEEM = "token_redeem"
ROUTE_CLASS_PASSWORD_CHANGE = "password_change"
ROUTE_CLASS_USER_CREATE = "user_create"

FAIL_MODE_OPEN = "open"
FAIL_MODE_CLOSED = "closed"


def limits_from_settings(settings) -> dict[str, BucketConfig]:
    return {
        ROUTE_CLASS_SIGNUP: BucketConfig.per_hour(settings.rl_signup_per_hour),
        ROUTE_CLASS_PASSWORD_RESET: BucketConfig.per_hour(settings.rl_password_reset_per_hour),
        ROUTE_CLASS_TOKEN_REDEEM: BucketConfig.per_hour(settings.rl_token_redeem_per_hour),
        ROUTE_CLASS_PASSWORD_CHANGE: BucketConfig.per_hour(settings.rl_password_change_per_hour),
        ROUTE_CLASS_USER_CREATE: BucketConfig.per_hour(settings.rl_user_create_per_hour),
    }


class RequestThrottle:
    """Per-subject token buckets for routes the login lockout does not cover.

    Subjects are the client address for anonymous routes and the user id for
    authenticated ones. When the counter store is down the throttle fails
    open by default so sign-in paths stay available.
    """

    def __init__(
        self,
        counters: CounterStore,
        audit: AuditLogger,
        *,
        limits: Mapping[str, BucketConfig],
        enabled: bool = True,
        fail_mode: str = FAIL_MODE_OPEN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._counters = counters
        self._audit = audit
        self._limits = dict(limits)
        self._enabled = enabled
        self._fail_mode = fail_mode.lower()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        counters: CounterStore,
        audit: AuditLogger,
        clock: Callable[[], datetime] | None = None,
    ) -> RequestThrottle:
        return cls(
            counters,
            audit,
            limits=limits_from_settings(settings),
            enabled=settings.rate_limit_enabled,
            fail_mode=settings.rl_fail_mode,
            clock=clock,
        )

    async def check(
        self,
        route_class: str,
        subject: str,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> BucketDecision | None:
        config = self._limits.get(route_class)
        if not self._enabled or config is None:
            return None
        try:
            decision = await self._counters.take_token(
                f"{route_class}:{subject}", now=self._clock(), config=config
            )
        except StoreUnavailableError:
            if self._fail_mode == FAIL_MODE_CLOSED:
                raise
            logger.warning("rate_limit_degraded route_class=%s", route_class)
            return None
        if decision.allowed:
            return decision

        context = context or {}
        logger.warning(
            "rate_limited route_class=%s subject=%s retry_after_ms=%s",
            route_class,
            subject,
            decision.retry_after_ms,
        )
        await self._audit.record(
            action="security.rate_limited",
            outcome=OUTCOME_DENY,
            reason="RATE_LIMITED",
            target_type="route_class",
            target_id=route_class,
            request_id=context.get("request_id"),
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
            metadata={"subject": subject, "retry_after_ms": decision.retry_after_ms},
        )
        raise RateLimitError(retry_after_s=decision.retry_after_s)
