from __future__ import annotations

from dataclasses import dataclass
from typing import Union
import logging

from tenantguard.core.errors import ForbiddenError, UnauthenticatedError, ValidationError
from tenantguard.domain.entities import User
from tenantguard.domain.identity import ApiKeyIdentity, AuthDecision, Identity, SessionIdentity
from tenantguard.persistence.versioned import VersionedStore
from tenantguard.services.auth.api_keys import ApiKeyManager
from tenantguard.services.auth.sessions import SessionManager
from tenantguard.services.authz.permissions import (
    PERMISSIONS,
    SCOPE_TO_PERMISSION,
    has_permission,
    scopes_grant_permission,
)
from tenantguard.services.members import MembershipManager


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionRequirement:
    permission: str

    def __post_init__(self) -> None:
        if self.permission not in PERMISSIONS:
            raise ValidationError(f"Unknown permission: {self.permission}", code="INVALID_PERMISSION")


@dataclass(frozen=True)
class ScopeRequirement:
    scope: str

    def __post_init__(self) -> None:
        if self.scope not in SCOPE_TO_PERMISSION:
            raise ValidationError(f"Unknown scope: {self.scope}", code="INVALID_SCOPE")


# Several names are both a permission and a scope, so the kind is explicit.
Requirement = Union[PermissionRequirement, ScopeRequirement]


def parse_bearer(header_value: str | None) -> str:
    # Enforce the "Bearer <token>" wire format before any credential lookup.
    if not header_value:
        raise UnauthenticatedError("Missing bearer token", code="AUTH_MISSING")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Missing or invalid bearer token", code="AUTH_MALFORMED")
    return parts[1]


class AuthorizationMiddleware:
    """Resolves a bearer credential to an identity and checks requirements.

    Identity resolution goes through the session and API key caches;
    membership lookups for authorization are always read fresh and never
    wait on membership write locks.
    """

    def __init__(
        self,
        *,
        sessions: SessionManager,
        api_keys: ApiKeyManager,
        members: MembershipManager,
        store: VersionedStore,
    ) -> None:
        self._sessions = sessions
        self._api_keys = api_keys
        self._members = members
        self._store = store

    async def resolve_identity(self, token: str) -> Identity:
        if token.startswith(self._api_keys.prefix):
            api_key = await self._api_keys.authenticate(token)
            return ApiKeyIdentity(
                key_id=api_key.id,
                user_id=api_key.user_id,
                workspace_id=api_key.workspace_id or "",
                scopes=frozenset(api_key.scopes),
            )
        return await self._sessions.authenticate(token)

    async def authenticate(self, header_value: str | None) -> Identity:
        return await self.resolve_identity(parse_bearer(header_value))

    async def session_role(self, identity: SessionIdentity, workspace_id: str) -> str | None:
        # Super admins act as owners in every workspace, member or not.
        user = await self._store.resolve_latest(User, identity.user_id)
        if user is not None and user.deleted_at is None and user.is_super_admin:
            return "owner"
        membership = await self._members.get_membership(workspace_id, identity.user_id)
        return membership.role if membership is not None else None

    async def _authorize_session(
        self,
        identity: SessionIdentity,
        requirement: Requirement,
        workspace_id: str | None,
    ) -> AuthDecision:
        if isinstance(requirement, ScopeRequirement):
            return AuthDecision.deny("API key required", code="API_KEY_REQUIRED")
        if workspace_id is None:
            return AuthDecision.deny("workspace_id is required", code="WORKSPACE_REQUIRED")
        role = await self.session_role(identity, workspace_id)
        if role is None:
            return AuthDecision.deny("Not a member of this workspace", code="NOT_A_MEMBER")
        if not has_permission(role, requirement.permission):
            return AuthDecision.deny(
                f"Insufficient permissions: requires '{requirement.permission}'",
                code="INSUFFICIENT_PERMISSIONS",
            )
        return AuthDecision.allow()

    def _authorize_api_key(
        self,
        identity: ApiKeyIdentity,
        requirement: Requirement,
        workspace_id: str | None,
    ) -> AuthDecision:
        if workspace_id is not None and workspace_id != identity.workspace_id:
            return AuthDecision.deny("API key not authorized for this workspace", code="WORKSPACE_MISMATCH")
        if isinstance(requirement, ScopeRequirement):
            if requirement.scope not in identity.scopes:
                return AuthDecision.deny(f"Missing required scope: {requirement.scope}", code="MISSING_SCOPE")
            return AuthDecision.allow()
        # A key never carries a role; it can only act through what its scopes map to.
        if not scopes_grant_permission(identity.scopes, requirement.permission):
            return AuthDecision.deny("API key has insufficient permissions", code="INSUFFICIENT_SCOPE")
        return AuthDecision.allow()

    async def authorize(
        self,
        identity: Identity,
        requirement: Requirement,
        workspace_id: str | None = None,
    ) -> AuthDecision:
        if isinstance(identity, SessionIdentity):
            decision = await self._authorize_session(identity, requirement, workspace_id)
        elif isinstance(identity, ApiKeyIdentity):
            decision = self._authorize_api_key(identity, requirement, workspace_id)
        else:
            raise TypeError(f"Unsupported identity: {type(identity).__name__}")
        if not decision.allowed:
            logger.info(
                "authorization_denied kind=%s code=%s workspace_id=%s",
                identity.kind,
                decision.code,
                workspace_id,
            )
        return decision

    async def enforce(
        self,
        identity: Identity,
        requirement: Requirement,
        workspace_id: str | None = None,
    ) -> None:
        decision = await self.authorize(identity, requirement, workspace_id)
        if not decision.allowed:
            raise ForbiddenError(decision.reason or "Forbidden", code=decision.code)
