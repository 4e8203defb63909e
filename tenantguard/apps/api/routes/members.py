from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict

from tenantguard.apps.api.deps import get_context, get_services, require_permission, require_session
from tenantguard.apps.api.response import DEFAULT_ERROR_RESPONSES, SuccessEnvelope, success_response
from tenantguard.domain.entities import Role, new_id
from tenantguard.domain.identity import SessionIdentity
from tenantguard.services.audit import RequestContext
from tenantguard.services.container import Services


router = APIRouter(prefix="/workspaces", tags=["members"], responses=DEFAULT_ERROR_RESPONSES)


class MemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    user_id: str
    role: str
    invited_by: str | None
    joined_at: datetime
    updated_at: datetime


class CreateWorkspaceRequest(BaseModel):
    workspace_id: str | None = None


class AddMemberRequest(BaseModel):
    user_id: str
    role: Role


class UpdateRoleRequest(BaseModel):
    role: Role


class TransferOwnershipRequest(BaseModel):
    new_owner_id: str


class TransferOwnershipResponse(BaseModel):
    old_owner: MemberResponse
    new_owner: MemberResponse


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: str
    actor_id: str | None
    workspace_id: str | None
    target_type: str | None
    target_id: str | None
    metadata: dict[str, Any]
    updated_at: datetime


@router.post("", status_code=201, response_model=SuccessEnvelope[MemberResponse])
async def create_workspace(
    request: Request,
    payload: CreateWorkspaceRequest,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    membership = await services.members.create_workspace_owner(
        payload.workspace_id or new_id(),
        identity.user_id,
        context=context,
    )
    return success_response(request=request, data=MemberResponse.model_validate(membership))


@router.get("/{workspace_id}/members", response_model=SuccessEnvelope[list[MemberResponse]])
async def list_members(
    request: Request,
    workspace_id: str,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
) -> dict:
    members = await services.members.list_members(workspace_id, identity.user_id)
    return success_response(request=request, data=[MemberResponse.model_validate(m) for m in members])


@router.get("/{workspace_id}/members/{user_id}", response_model=SuccessEnvelope[MemberResponse])
async def get_member(
    request: Request,
    workspace_id: str,
    user_id: str,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
) -> dict:
    member = await services.members.get_member(workspace_id, user_id, identity.user_id)
    return success_response(request=request, data=MemberResponse.model_validate(member))


@router.post("/{workspace_id}/members", status_code=201, response_model=SuccessEnvelope[MemberResponse])
async def add_member(
    request: Request,
    workspace_id: str,
    payload: AddMemberRequest,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    member = await services.members.add_member(
        workspace_id,
        payload.user_id,
        payload.role,
        identity.user_id,
        context=context,
    )
    return success_response(request=request, data=MemberResponse.model_validate(member))


@router.patch("/{workspace_id}/members/{user_id}", response_model=SuccessEnvelope[MemberResponse])
async def update_member_role(
    request: Request,
    workspace_id: str,
    user_id: str,
    payload: UpdateRoleRequest,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    member = await services.members.update_role(
        workspace_id,
        user_id,
        payload.role,
        identity.user_id,
        context=context,
    )
    return success_response(request=request, data=MemberResponse.model_validate(member))


@router.delete("/{workspace_id}/members/{user_id}", status_code=204)
async def remove_member(
    workspace_id: str,
    user_id: str,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> None:
    await services.members.remove(workspace_id, user_id, identity.user_id, context=context)


@router.post("/{workspace_id}/leave", status_code=204)
async def leave_workspace(
    workspace_id: str,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> None:
    await services.members.leave(workspace_id, identity.user_id, context=context)


@router.post(
    "/{workspace_id}/transfer-ownership",
    response_model=SuccessEnvelope[TransferOwnershipResponse],
)
async def transfer_ownership(
    request: Request,
    workspace_id: str,
    payload: TransferOwnershipRequest,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    old_owner, new_owner = await services.members.transfer_ownership(
        workspace_id,
        identity.user_id,
        payload.new_owner_id,
        context=context,
    )
    data = TransferOwnershipResponse(
        old_owner=MemberResponse.model_validate(old_owner),
        new_owner=MemberResponse.model_validate(new_owner),
    )
    return success_response(request=request, data=data)


@router.get(
    "/{workspace_id}/audit",
    response_model=SuccessEnvelope[list[AuditEventResponse]],
    dependencies=[Depends(require_permission("workspace.settings"))],
)
async def list_audit_events(
    request: Request,
    workspace_id: str,
    action: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    services: Services = Depends(get_services),
) -> dict:
    events = await services.audit.list_events(workspace_id=workspace_id, action=action, limit=limit)
    return success_response(request=request, data=[AuditEventResponse.model_validate(e) for e in events])
