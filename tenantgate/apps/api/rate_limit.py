from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, Request

from tenantgate.apps.api.deps import get_current_actor, get_services
from tenantgate.services.audit import get_request_context
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.container import AuthServices


def throttle_by_client(route_class: str) -> Callable[..., Awaitable[None]]:
    # Anonymous routes are budgeted per client address.
    async def _enforce(
        request: Request,
        services: AuthServices = Depends(get_services),
    ) -> None:
        context = get_request_context(request)
        subject = f"ip:{context['ip_address'] or 'unknown'}"
        await services.throttle.check(route_class, subject, context=context)

    return _enforce


def throttle_by_actor(route_class: str) -> Callable[..., Awaitable[None]]:
    # Runs after authentication so anonymous callers get 401, never 429.
    async def _enforce(
        request: Request,
        actor: ActorContext = Depends(get_current_actor),
        services: AuthServices = Depends(get_services),
    ) -> None:
        await services.throttle.check(
            route_class, f"user:{actor.user_id}", context=get_request_context(request)
        )

    return _enforce
