"""Out-of-band delivery of password-reset and login-unlock tokens.

Delivery never changes the outcome of the request that triggered it: a reset
request answers the same whether or not the message went out, so failures
come back as a ``DeliveryResult`` and are logged by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import hashlib
import hmac
import json
import logging
import threading
from typing import Any, Protocol

import httpx


logger = logging.getLogger(__name__)

KIND_PASSWORD_RESET = "password_reset"
KIND_LOGIN_UNLOCK = "login_unlock"


@dataclass(frozen=True)
class Notification:
    kind: str
    recipient: str
    token: str
    expires_at: datetime
    user_id: str | None = None
    organization_id: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "recipient": self.recipient,
            "token": self.token,
            "expires_at": self.expires_at.isoformat(),
            "user_id": self.user_id,
            "organization_id": self.organization_id,
        }


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    status_code: int | None
    message: str


class Notifier(Protocol):
    async def send(self, notification: Notification) -> DeliveryResult: ...


class InMemoryNotifier:
    # Outbox for tests and local development; nothing leaves the process.
    def __init__(self) -> None:
        self._sent: list[Notification] = []
        self._lock = threading.Lock()

    async def send(self, notification: Notification) -> DeliveryResult:
        with self._lock:
            self._sent.append(notification)
        return DeliveryResult(sent=True, status_code=None, message="Queued in memory")

    @property
    def sent(self) -> tuple[Notification, ...]:
        return tuple(self._sent)

    def last(self, kind: str, recipient: str) -> Notification | None:
        for notification in reversed(self._sent):
            if notification.kind == kind and notification.recipient == recipient:
                return notification
        return None


def build_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """POST each notification as signed JSON to a mail relay."""

    def __init__(
        self,
        *,
        url: str,
        secret: str,
        timeout_s: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._timeout_s = timeout_s
        self._transport = transport

    async def send(self, notification: Notification) -> DeliveryResult:
        body = json.dumps(notification.payload(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-TenantGate-Signature": build_signature(self._secret, body),
            "X-TenantGate-Event": notification.kind,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("notification_send_failed kind=%s", notification.kind, exc_info=exc)
            return DeliveryResult(sent=False, status_code=None, message=str(exc))
        if response.status_code >= 400:
            return DeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"Relay responded with status {response.status_code}",
            )
        return DeliveryResult(sent=True, status_code=response.status_code, message="Delivered")


async def deliver(notifier: Notifier, notification: Notification) -> DeliveryResult:
    result = await notifier.send(notification)
    if not result.sent:
        # The token itself is never logged.
        logger.warning(
            "notification_not_delivered kind=%s user_id=%s status=%s message=%s",
            notification.kind,
            notification.user_id,
            result.status_code,
            result.message,
        )
    return result
