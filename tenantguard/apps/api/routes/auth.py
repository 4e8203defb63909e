from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from tenantguard.apps.api.deps import get_context, get_services, require_session
from tenantguard.apps.api.response import DEFAULT_ERROR_RESPONSES, SuccessEnvelope, success_response
from tenantguard.core.errors import UnauthenticatedError
from tenantguard.domain.identity import SessionIdentity
from tenantguard.services.audit import RequestContext
from tenantguard.services.container import Services


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    status: str
    is_super_admin: bool
    last_login_at: datetime | None
    created_at: datetime


class SessionResponse(BaseModel):
    # token_hash is deliberately absent.
    model_config = ConfigDict(from_attributes=True)

    id: str
    ip_address: str | None
    user_agent: str | None
    expires_at: datetime
    created_at: datetime


class SignupRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str
    name: str = Field(default="", max_length=200)


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str
    expires_at: datetime
    user: UserResponse


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordResetRequest(BaseModel):
    email: str
    workspace_id: str | None = None


class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str


class RevokedCountResponse(BaseModel):
    revoked: int


class AcceptedResponse(BaseModel):
    accepted: bool = True


@router.post("/signup", status_code=201, response_model=SuccessEnvelope[UserResponse])
async def signup(
    request: Request,
    payload: SignupRequest,
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    user = await services.users.create_user(payload.email, payload.password, payload.name, context=context)
    return success_response(request=request, data=UserResponse.model_validate(user))


@router.post("/login", response_model=SuccessEnvelope[LoginResponse])
async def login(
    request: Request,
    payload: LoginRequest,
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    result = await services.users.login(payload.email, payload.password, context=context)
    data = LoginResponse(
        access_token=result.access_token,
        session_id=result.session_id,
        expires_at=result.expires_at,
        user=UserResponse.model_validate(result.user),
    )
    return success_response(request=request, data=data)


@router.get("/me", response_model=SuccessEnvelope[UserResponse])
async def me(
    request: Request,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
) -> dict:
    user = await services.users.find_by_id(identity.user_id)
    if user is None:
        raise UnauthenticatedError("User no longer exists", code="USER_NOT_FOUND")
    return success_response(request=request, data=UserResponse.model_validate(user))


@router.post("/logout", status_code=204)
async def logout(
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> None:
    await services.sessions.revoke(identity.session_id, identity.user_id, context=context)


@router.get("/sessions", response_model=SuccessEnvelope[list[SessionResponse]])
async def list_sessions(
    request: Request,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
) -> dict:
    sessions = await services.sessions.list_sessions(identity.user_id)
    return success_response(request=request, data=[SessionResponse.model_validate(s) for s in sessions])


@router.delete("/sessions/{session_id}", status_code=204)
async def revoke_session(
    session_id: str,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> None:
    await services.sessions.revoke(session_id, identity.user_id, context=context)


@router.post("/sessions/revoke-all", response_model=SuccessEnvelope[RevokedCountResponse])
async def revoke_all_sessions(
    request: Request,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    revoked = await services.sessions.revoke_all(identity.user_id, context=context)
    return success_response(request=request, data=RevokedCountResponse(revoked=revoked))


@router.post("/password", status_code=204)
async def change_password(
    payload: ChangePasswordRequest,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> None:
    await services.users.change_password(
        identity.user_id,
        payload.current_password,
        payload.new_password,
        context=context,
    )


@router.post("/password-reset/request", status_code=202, response_model=SuccessEnvelope[AcceptedResponse])
async def request_password_reset(
    request: Request,
    payload: PasswordResetRequest,
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    # Always 202, whether or not the email exists.
    await services.users.request_password_reset(
        payload.email,
        workspace_id=payload.workspace_id,
        context=context,
    )
    return success_response(request=request, data=AcceptedResponse())


@router.post("/password-reset/confirm", status_code=204)
async def confirm_password_reset(
    payload: PasswordResetConfirm,
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> None:
    await services.users.reset_password(payload.token, payload.new_password, context=context)
