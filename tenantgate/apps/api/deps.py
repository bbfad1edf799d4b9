from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from fastapi import Depends, Request

from tenantgate.apps.api.errors import ENDPOINT_CLASS_ORGANIZATION, ENDPOINT_CLASS_RESOURCE
from tenantgate.core.errors import ValidationError
from tenantgate.services.audit import get_request_context
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.container import AuthServices
from tenantgate.services.identity import PROTECTED_USER_FIELDS


class EndpointClass(str, Enum):
    # Decides how a cross-tenant denial is rendered: 404 for RESOURCE, 403 for ORGANIZATION.
    RESOURCE = ENDPOINT_CLASS_RESOURCE
    ORGANIZATION = ENDPOINT_CLASS_ORGANIZATION


def get_services(request: Request) -> AuthServices:
    return request.app.state.services


def request_context(request: Request) -> dict[str, str | None]:
    return get_request_context(request)


def endpoint_class(value: EndpointClass) -> Callable[[Request], None]:
    def _mark(request: Request) -> None:
        request.state.endpoint_class = value.value

    return _mark


def _parse_bearer_token(header_value: str | None) -> str | None:
    # A malformed header is treated like a missing token.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_actor(
    request: Request,
    services: AuthServices = Depends(get_services),
) -> ActorContext:
    header_value = request.headers.get(services.settings.auth_header)
    actor = await services.sessions.authenticate(
        _parse_bearer_token(header_value),
        context=get_request_context(request),
    )
    request.state.actor = actor
    return actor


async def _reject_protected(request: Request, protected: frozenset[str]) -> None:
    # Reject client-supplied protected fields before the body reaches the model.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if not isinstance(payload, dict):
        return
    for field in payload:
        if field in protected:
            raise ValidationError(f"Field '{field}' cannot be modified", field=field)


def protected_fields_guard(protected: frozenset[str]) -> Callable[..., Any]:
    # Authenticated routes: resolve the caller first so anonymous requests get 401.
    async def _reject(
        request: Request,
        actor: ActorContext = Depends(get_current_actor),
    ) -> None:
        await _reject_protected(request, protected)

    return _reject


def anonymous_protected_fields_guard(protected: frozenset[str]) -> Callable[..., Any]:
    async def _reject(request: Request) -> None:
        await _reject_protected(request, protected)

    return _reject


reject_protected_fields = protected_fields_guard(PROTECTED_USER_FIELDS)
reject_protected_signup_fields = anonymous_protected_fields_guard(PROTECTED_USER_FIELDS)
