from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable

from starlette.requests import Request

from tenantgate.core.errors import StoreUnavailableError
from tenantgate.domain.models import AuditEvent
from tenantgate.persistence.stores import AuditSink
from tenantgate.services.authz.decisions import ActorContext, Decision, ResourceRef


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = [
    "authorization",
    "cookie",
    "credential",
    "password",
    "secret",
    "token",
]
_REDACTED_VALUE = "[REDACTED]"

OUTCOME_ALLOW = "allow"
OUTCOME_DENY = "deny"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    # The API middleware stores a validated id; raw headers are never trusted here.
    request_id = getattr(request.state, "request_id", None)
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


class AuditLogger:
    """Append-only audit trail for authorization and authentication outcomes.

    Writes are best effort by default: a failing sink is logged and never
    changes the decision that triggered the write.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        best_effort: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._best_effort = best_effort
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record(
        self,
        *,
        action: str,
        outcome: str,
        organization_id: str | None = None,
        actor_id: str | None = None,
        actor_role: str | None = None,
        reason: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        request_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        event = AuditEvent(
            occurred_at=self._clock(),
            organization_id=organization_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            outcome=outcome,
            reason=reason,
            target_type=target_type,
            target_id=target_id,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata_json=sanitize_metadata(metadata or {}),
        )
        try:
            await self._sink.append(event)
        except StoreUnavailableError as exc:
            if not self._best_effort:
                raise
            logger.warning(
                "audit_event_write_failed action=%s outcome=%s request_id=%s",
                action,
                outcome,
                request_id,
                exc_info=exc,
            )

    async def record_decision(
        self,
        actor: ActorContext,
        permission: str,
        decision: Decision,
        resource: ResourceRef | None = None,
        *,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        context = context or {}
        await self.record(
            action=f"authz.{permission}",
            outcome=OUTCOME_ALLOW if decision.allowed else OUTCOME_DENY,
            organization_id=actor.organization_id,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            reason=decision.reason.value if decision.reason else None,
            target_type=resource.resource_type if resource else None,
            target_id=resource.id if resource else None,
            request_id=context.get("request_id"),
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
            metadata=metadata,
        )

    async def record_auth(
        self,
        action: str,
        *,
        outcome: str,
        reason: str | None = None,
        user_id: str | None = None,
        organization_id: str | None = None,
        actor_role: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.record(
            action=action,
            outcome=outcome,
            reason=reason,
            organization_id=organization_id,
            actor_id=user_id,
            actor_role=actor_role,
            target_type="user" if user_id else None,
            target_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )
