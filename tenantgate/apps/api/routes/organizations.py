from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from tenantgate.apps.api.deps import (
    EndpointClass,
    endpoint_class,
    get_current_actor,
    get_services,
    protected_fields_guard,
    request_context,
)
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.response import ItemList, SuccessEnvelope, success_response
from tenantgate.apps.api.routes.users import UserResponse, user_payload
from tenantgate.domain.models import Organization
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.container import AuthServices
from tenantgate.services.identity import PROTECTED_ORGANIZATION_FIELDS


router = APIRouter(
    prefix="/organizations",
    tags=["organizations"],
    responses=DEFAULT_ERROR_RESPONSES,
    # The organization id is in the URL already, so denials stay 403.
    dependencies=[Depends(endpoint_class(EndpointClass.ORGANIZATION))],
)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    status: str
    created_at: str | None


class OrganizationPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)


class TransferRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_owner_id: str


def organization_payload(organization: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=organization.id,
        name=organization.name,
        status=organization.status,
        created_at=organization.created_at.isoformat() if organization.created_at else None,
    )


@router.get("/{organization_id}", response_model=SuccessEnvelope[OrganizationResponse])
async def get_organization(
    organization_id: str,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    organization = await services.identity.get_organization(
        actor, organization_id, context=request_context(request)
    )
    return success_response(request=request, data=organization_payload(organization))


@router.patch(
    "/{organization_id}",
    response_model=SuccessEnvelope[OrganizationResponse],
    dependencies=[Depends(protected_fields_guard(PROTECTED_ORGANIZATION_FIELDS))],
)
async def patch_organization(
    organization_id: str,
    payload: OrganizationPatchRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    organization = await services.identity.update_organization(
        actor,
        organization_id,
        payload.model_dump(exclude_unset=True),
        context=request_context(request),
    )
    return success_response(request=request, data=organization_payload(organization))


@router.delete("/{organization_id}", response_model=SuccessEnvelope[OrganizationResponse])
async def delete_organization(
    organization_id: str,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    organization = await services.identity.delete_organization(
        actor, organization_id, context=request_context(request)
    )
    return success_response(request=request, data=organization_payload(organization))


@router.get("/{organization_id}/users", response_model=SuccessEnvelope[ItemList[UserResponse]])
async def list_organization_users(
    organization_id: str,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    users = await services.identity.list_users(
        actor, organization_id, context=request_context(request)
    )
    return success_response(
        request=request,
        data=ItemList[UserResponse](items=[user_payload(user) for user in users]),
    )


@router.post("/{organization_id}/transfer", response_model=SuccessEnvelope[UserResponse])
async def transfer_ownership(
    organization_id: str,
    payload: TransferRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    new_owner = await services.identity.transfer_ownership(
        actor,
        organization_id,
        payload.new_owner_id,
        context=request_context(request),
    )
    return success_response(request=request, data=user_payload(new_owner))
