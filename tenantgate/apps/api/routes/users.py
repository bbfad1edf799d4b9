from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field

from tenantgate.apps.api.deps import (
    EndpointClass,
    endpoint_class,
    get_current_actor,
    get_services,
    reject_protected_fields,
    request_context,
)
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.rate_limit import throttle_by_actor
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.domain.models import User
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.container import AuthServices
from tenantgate.services.throttle import ROUTE_CLASS_USER_CREATE


router = APIRouter(
    prefix="/users",
    tags=["users"],
    responses=DEFAULT_ERROR_RESPONSES,
    # Users are addressed by their own id, so cross-tenant denials render as 404.
    dependencies=[Depends(endpoint_class(EndpointClass.RESOURCE))],
)


class UserResponse(BaseModel):
    id: str
    organization_id: str
    email: str
    first_name: str | None
    last_name: str | None
    role: str
    is_active: bool
    created_at: str | None


class UserCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)
    role: str
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)


class UserPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = Field(default=None, max_length=320)
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)
    role: str | None = None


def user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        organization_id=user.organization_id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        is_active=bool(user.is_active),
        created_at=user.created_at.isoformat() if user.created_at else None,
    )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[UserResponse],
    dependencies=[
        Depends(reject_protected_fields),
        Depends(throttle_by_actor(ROUTE_CLASS_USER_CREATE)),
    ],
)
async def create_user(
    payload: UserCreateRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    user = await services.identity.create_user(
        actor,
        email=payload.email,
        password=payload.password,
        role=payload.role,
        first_name=payload.first_name,
        last_name=payload.last_name,
        context=request_context(request),
    )
    return success_response(request=request, data=user_payload(user))


@router.get("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def get_user(
    user_id: str,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    user = await services.identity.get_user(actor, user_id, context=request_context(request))
    return success_response(request=request, data=user_payload(user))


@router.patch(
    "/{user_id}",
    response_model=SuccessEnvelope[UserResponse],
    dependencies=[Depends(reject_protected_fields)],
)
async def patch_user(
    user_id: str,
    payload: UserPatchRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    user = await services.identity.update_user(
        actor,
        user_id,
        payload.model_dump(exclude_unset=True),
        context=request_context(request),
    )
    return success_response(request=request, data=user_payload(user))


@router.delete("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def delete_user(
    user_id: str,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    # Deactivation, not deletion; the row stays for the audit trail.
    user = await services.identity.deactivate_user(actor, user_id, context=request_context(request))
    return success_response(request=request, data=user_payload(user))
