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
    reject_protected_signup_fields,
    request_context,
)
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.rate_limit import throttle_by_actor, throttle_by_client
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.apps.api.routes.users import UserResponse, user_payload
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.container import AuthServices
from tenantgate.services.throttle import ROUTE_CLASS_TOKEN_REDEEM, ROUTE_CLASS_USER_CREATE


router = APIRouter(
    prefix="/invitations",
    tags=["invitations"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(endpoint_class(EndpointClass.ORGANIZATION))],
)


class InvitationCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=3, max_length=320)
    role: str


class InvitationResponse(BaseModel):
    id: str
    organization_id: str
    email: str
    role: str
    expires_at: str
    # Returned once so the inviter can deliver the link; only its hash is stored.
    invite_token: str


class InvitationAcceptRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(min_length=1)
    password: str = Field(min_length=1, max_length=256)
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[InvitationResponse],
    dependencies=[
        Depends(reject_protected_fields),
        Depends(throttle_by_actor(ROUTE_CLASS_USER_CREATE)),
    ],
)
async def create_invitation(
    payload: InvitationCreateRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    issued = await services.identity.invite(
        actor,
        email=payload.email,
        role=payload.role,
        context=request_context(request),
    )
    invitation = issued.invitation
    data = InvitationResponse(
        id=invitation.id,
        organization_id=invitation.organization_id,
        email=invitation.email,
        role=invitation.role,
        expires_at=invitation.expires_at.isoformat(),
        invite_token=issued.token,
    )
    return success_response(request=request, data=data)


@router.post(
    "/accept",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[UserResponse],
    dependencies=[
        Depends(throttle_by_client(ROUTE_CLASS_TOKEN_REDEEM)),
        Depends(reject_protected_signup_fields),
    ],
)
async def accept_invitation(
    payload: InvitationAcceptRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    user = await services.identity.accept_invitation(
        token=payload.token,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    return success_response(request=request, data=user_payload(user))
