from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, Request

from tenantguard.core.errors import ForbiddenError
from tenantguard.domain.identity import Identity, SessionIdentity
from tenantguard.services.audit import RequestContext, get_request_context
from tenantguard.services.authz.middleware import PermissionRequirement, Requirement, ScopeRequirement
from tenantguard.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_context(request: Request) -> RequestContext:
    return get_request_context(request)


async def get_current_identity(
    request: Request,
    services: Services = Depends(get_services),
) -> Identity:
    # Resolve once per request; downstream dependencies reuse the cached identity.
    identity = getattr(request.state, "identity", None)
    if identity is None:
        identity = await services.authz.authenticate(request.headers.get("Authorization"))
        request.state.identity = identity
    return identity


async def require_session(identity: Identity = Depends(get_current_identity)) -> SessionIdentity:
    if not isinstance(identity, SessionIdentity):
        raise ForbiddenError("This operation requires a user session", code="SESSION_REQUIRED")
    return identity


def _workspace_from_request(request: Request) -> str | None:
    return request.path_params.get("workspace_id") or request.query_params.get("workspace_id")


def _requirement_dependency(requirement: Requirement) -> Callable[..., Awaitable[Identity]]:
    async def dependency(
        request: Request,
        identity: Identity = Depends(get_current_identity),
        services: Services = Depends(get_services),
    ) -> Identity:
        await services.authz.enforce(identity, requirement, _workspace_from_request(request))
        return identity

    return dependency


def require_permission(permission: str) -> Callable[..., Awaitable[Identity]]:
    # Validated when the route is declared, not on the first request.
    return _requirement_dependency(PermissionRequirement(permission))


def require_scope(scope: str) -> Callable[..., Awaitable[Identity]]:
    return _requirement_dependency(ScopeRequirement(scope))
