from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from tenantguard.apps.api.deps import (
    get_context,
    get_current_identity,
    get_services,
    require_permission,
    require_scope,
    require_session,
)
from tenantguard.apps.api.response import DEFAULT_ERROR_RESPONSES, SuccessEnvelope, success_response
from tenantguard.core.errors import ForbiddenError, NotFoundError
from tenantguard.domain.entities import ApiKey, ApiKeyStatus, ApiScope
from tenantguard.domain.identity import ApiKeyIdentity, Identity, SessionIdentity
from tenantguard.services.audit import RequestContext
from tenantguard.services.container import Services


router = APIRouter(prefix="/workspaces/{workspace_id}", tags=["api-keys"], responses=DEFAULT_ERROR_RESPONSES)


class ApiKeyResponse(BaseModel):
    # key_hash never leaves the service layer.
    model_config = ConfigDict(from_attributes=True)

    id: str
    key_prefix: str
    user_id: str
    workspace_id: str | None
    name: str
    description: str
    scopes: list[str]
    status: str
    expires_at: datetime | None
    last_used_at: datetime | None
    created_by: str
    revoked_by: str | None
    revoked_at: datetime | None
    created_at: datetime


class CreateApiKeyRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    scopes: list[ApiScope] = Field(min_length=1)
    description: str = Field(default="", max_length=500)
    expires_at: datetime | None = None


class CreateApiKeyResponse(BaseModel):
    # The raw key is shown exactly once.
    key: str
    api_key: ApiKeyResponse


class AccessResponse(BaseModel):
    kind: str
    user_id: str
    workspace_id: str
    role: str | None = None
    scopes: list[str] | None = None


def _to_response(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse.model_validate(api_key.public_view())


async def _key_in_workspace(services: Services, workspace_id: str, key_id: str) -> ApiKey:
    api_key = await services.api_keys.get(key_id)
    # Keys from other workspaces are reported as missing, not forbidden.
    if api_key.workspace_id != workspace_id:
        raise NotFoundError(f"API key {key_id} not found", code="API_KEY_NOT_FOUND")
    return api_key


@router.post("/api-keys", status_code=201, response_model=SuccessEnvelope[CreateApiKeyResponse])
async def create_api_key(
    request: Request,
    workspace_id: str,
    payload: CreateApiKeyRequest,
    identity: SessionIdentity = Depends(require_session),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    raw_key, api_key = await services.api_keys.create(
        workspace_id,
        identity.user_id,
        payload.scopes,
        payload.name,
        description=payload.description,
        expires_at=payload.expires_at,
        context=context,
    )
    return success_response(request=request, data=CreateApiKeyResponse(key=raw_key, api_key=_to_response(api_key)))


@router.get(
    "/api-keys",
    response_model=SuccessEnvelope[list[ApiKeyResponse]],
    dependencies=[Depends(require_permission("apiKeys.view"))],
)
async def list_api_keys(
    request: Request,
    workspace_id: str,
    status: ApiKeyStatus | None = Query(default=None),
    services: Services = Depends(get_services),
) -> dict:
    keys = await services.api_keys.list_keys(workspace_id=workspace_id, status=status)
    return success_response(request=request, data=[_to_response(key) for key in keys])


@router.get(
    "/api-keys/{key_id}",
    response_model=SuccessEnvelope[ApiKeyResponse],
    dependencies=[Depends(require_permission("apiKeys.view"))],
)
async def get_api_key(
    request: Request,
    workspace_id: str,
    key_id: str,
    services: Services = Depends(get_services),
) -> dict:
    api_key = await _key_in_workspace(services, workspace_id, key_id)
    return success_response(request=request, data=_to_response(api_key))


@router.delete("/api-keys/{key_id}", response_model=SuccessEnvelope[ApiKeyResponse])
async def revoke_api_key(
    request: Request,
    workspace_id: str,
    key_id: str,
    identity: Identity = Depends(require_permission("apiKeys.manage")),
    services: Services = Depends(get_services),
    context: RequestContext = Depends(get_context),
) -> dict:
    await _key_in_workspace(services, workspace_id, key_id)
    revoked = await services.api_keys.revoke(key_id, identity.user_id, context=context)
    return success_response(request=request, data=_to_response(revoked))


@router.get(
    "/access",
    response_model=SuccessEnvelope[AccessResponse],
    dependencies=[Depends(require_permission("analytics.view"))],
)
async def current_access(
    request: Request,
    workspace_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> dict:
    if isinstance(identity, ApiKeyIdentity):
        data = AccessResponse(
            kind=identity.kind,
            user_id=identity.user_id,
            workspace_id=identity.workspace_id,
            scopes=sorted(identity.scopes),
        )
    else:
        data = AccessResponse(
            kind=identity.kind,
            user_id=identity.user_id,
            workspace_id=workspace_id,
            role=await services.authz.session_role(identity, workspace_id),
        )
    return success_response(request=request, data=data)


@router.get("/api-key", response_model=SuccessEnvelope[ApiKeyResponse])
async def current_api_key(
    request: Request,
    identity: Identity = Depends(require_scope("workspace.read")),
    services: Services = Depends(get_services),
) -> dict:
    if not isinstance(identity, ApiKeyIdentity):
        raise ForbiddenError("API key required", code="API_KEY_REQUIRED")
    api_key = await services.api_keys.get(identity.key_id)
    return success_response(request=request, data=_to_response(api_key))
