from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field

from tenantgate.apps.api.deps import (
    get_current_actor,
    get_services,
    reject_protected_signup_fields,
    request_context,
)
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.rate_limit import throttle_by_actor, throttle_by_client
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.apps.api.routes.organizations import OrganizationResponse, organization_payload
from tenantgate.apps.api.routes.users import UserResponse, user_payload
from tenantgate.services.auth.sessions import REVOKE_LOGOUT
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.container import AuthServices
from tenantgate.services.throttle import (
    ROUTE_CLASS_PASSWORD_CHANGE,
    ROUTE_CLASS_PASSWORD_RESET,
    ROUTE_CLASS_SIGNUP,
    ROUTE_CLASS_TOKEN_REDEEM,
)


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organization_name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)


class SignupResponse(BaseModel):
    organization: OrganizationResponse
    user: UserResponse


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    session_id: str
    expires_at: str
    user: UserResponse


class RevokeResponse(BaseModel):
    revoked: int


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=256)


class UnlockRequest(BaseModel):
    token: str = Field(min_length=1)


class StatusResponse(BaseModel):
    status: str


@router.post(
    "/signup",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[SignupResponse],
    dependencies=[
        Depends(throttle_by_client(ROUTE_CLASS_SIGNUP)),
        Depends(reject_protected_signup_fields),
    ],
)
async def signup(
    payload: SignupRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    result = await services.identity.signup(
        organization_name=payload.organization_name,
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    data = SignupResponse(
        organization=organization_payload(result.organization),
        user=user_payload(result.user),
    )
    return success_response(request=request, data=data)


@router.post("/login", response_model=SuccessEnvelope[LoginResponse])
async def login(
    payload: LoginRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    context = request_context(request)
    result = await services.login.login(
        payload.email,
        payload.password,
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
    )
    session = result.issued.session
    data = LoginResponse(
        token=result.token,
        session_id=session.id,
        expires_at=session.expires_at.isoformat(),
        user=user_payload(result.user),
    )
    return success_response(request=request, data=data)


@router.post("/logout", response_model=SuccessEnvelope[RevokeResponse])
async def logout(
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    revoked = 0
    if actor.session_id and await services.sessions.revoke(actor.session_id, reason=REVOKE_LOGOUT):
        revoked = 1
    return success_response(request=request, data=RevokeResponse(revoked=revoked))


@router.post("/logout-others", response_model=SuccessEnvelope[RevokeResponse])
async def logout_others(
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    revoked = await services.sessions.revoke_all_except(actor.user_id, actor.session_id or "")
    return success_response(request=request, data=RevokeResponse(revoked=revoked))


@router.get("/me", response_model=SuccessEnvelope[UserResponse])
async def me(
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    user = await services.identity.get_me(actor)
    return success_response(request=request, data=user_payload(user))


@router.post(
    "/password/change",
    response_model=SuccessEnvelope[RevokeResponse],
    dependencies=[Depends(throttle_by_actor(ROUTE_CLASS_PASSWORD_CHANGE))],
)
async def change_password(
    payload: PasswordChangeRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    revoked = await services.identity.change_password(
        actor,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    return success_response(request=request, data=RevokeResponse(revoked=revoked))


@router.post(
    "/password/reset-request",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[StatusResponse],
    dependencies=[Depends(throttle_by_client(ROUTE_CLASS_PASSWORD_RESET))],
)
async def request_password_reset(
    payload: PasswordResetRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    # Identical response whether or not the account exists; the token goes out of band.
    await services.identity.request_password_reset(payload.email)
    return success_response(request=request, data=StatusResponse(status="accepted"))


@router.post(
    "/password/reset",
    response_model=SuccessEnvelope[RevokeResponse],
    dependencies=[Depends(throttle_by_client(ROUTE_CLASS_TOKEN_REDEEM))],
)
async def reset_password(
    payload: PasswordResetConfirm,
    request: Request,
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    revoked = await services.identity.reset_password(
        token=payload.token, new_password=payload.new_password
    )
    return success_response(request=request, data=RevokeResponse(revoked=revoked))


@router.post(
    "/unlock",
    response_model=SuccessEnvelope[StatusResponse],
    dependencies=[Depends(throttle_by_client(ROUTE_CLASS_TOKEN_REDEEM))],
)
async def unlock(
    payload: UnlockRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
) -> dict[str, Any]:
    await services.lockout.unlock(payload.token)
    return success_response(request=request, data=StatusResponse(status="unlocked"))
