from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Iterable
import logging

from tenantguard.core.clock import utc_now
from tenantguard.core.config import Settings
from tenantguard.core.errors import (
    ForbiddenError,
    NotFoundError,
    TenantGuardError,
    UnauthenticatedError,
    ValidationError,
)
from tenantguard.domain.entities import ApiKey
from tenantguard.persistence.versioned import VersionedStore, select_latest
from tenantguard.services.audit import AuditLogger, RequestContext
from tenantguard.services.auth.hashing import CredentialHasher
from tenantguard.services.authz.permissions import has_permission, normalize_scopes, scope_requires_permission
from tenantguard.services.cache import TTLCache
from tenantguard.services.members import MembershipManager


logger = logging.getLogger(__name__)


def api_key_cache_key(key_hash: str) -> str:
    return f"api_key:{key_hash}"


def _is_expired(api_key: ApiKey, now: datetime | None = None) -> bool:
    if api_key.expires_at is None:
        return False
    return api_key.expires_at <= (now or utc_now())


def current_versions(versions: list[ApiKey]) -> dict[str, ApiKey]:
    """Collapse key history to one current value per id.

    Revocation is absorbing. A version written later from a read taken before
    the revoke (a last-used stamp, a lazy expiry) keeps its usage fields but
    cannot bring the key back to ``active``.
    """
    latest = select_latest(versions)
    revocations = select_latest(version for version in versions if version.status == "revoked")
    for key_id, revocation in revocations.items():
        if latest[key_id].status != "revoked":
            latest[key_id] = replace(
                latest[key_id],
                status="revoked",
                revoked_by=revocation.revoked_by,
                revoked_at=revocation.revoked_at,
            )
    return latest


class ApiKeyManager:
    """Scoped, workspace-bound API keys.

    The raw key is returned once by ``create`` and only its hash is stored.
    Successful authentications are cached by key hash; ``revoke`` writes
    before it invalidates, and an authentication that read the store before
    that invalidation does not cache what it read.
    """

    def __init__(
        self,
        *,
        store: VersionedStore,
        hasher: CredentialHasher,
        members: MembershipManager,
        audit: AuditLogger,
        settings: Settings,
        cache: TTLCache[ApiKey] | None = None,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._members = members
        self._audit = audit
        self.prefix = settings.api_key_prefix
        self._cache = cache if cache is not None else TTLCache(settings.api_key_cache_ttl_s)
        # Pending last-used writes, by key id.
        self._background: dict[asyncio.Task[None], str] = {}

    async def validate_scopes_for_user(self, workspace_id: str, user_id: str, scopes: Iterable[str]) -> None:
        membership = await self._members.get_membership(workspace_id, user_id)
        if membership is None:
            raise ForbiddenError("Not a member of this workspace", code="NOT_A_MEMBER")
        if not has_permission(membership.role, "integrations.manage"):
            raise ForbiddenError("Insufficient permissions to create API keys", code="INSUFFICIENT_PERMISSIONS")
        for scope in scopes:
            required = scope_requires_permission(scope)
            if required is not None and not has_permission(membership.role, required):
                raise ForbiddenError(
                    f"Cannot grant scope '{scope}': missing '{required}' permission",
                    code="SCOPE_NOT_GRANTABLE",
                )

    async def create(
        self,
        workspace_id: str,
        creator_id: str,
        scopes: Iterable[str],
        name: str,
        *,
        description: str = "",
        expires_at: datetime | None = None,
        user_id: str | None = None,
        context: RequestContext | None = None,
    ) -> tuple[str, ApiKey]:
        normalized_scopes = normalize_scopes(scopes)
        name = name.strip()
        if not name:
            raise ValidationError("API key name is required", code="INVALID_NAME")
        if expires_at is not None and expires_at <= utc_now():
            raise ValidationError("expires_at must be in the future", code="INVALID_EXPIRY")
        # Every check runs before the key exists; a rejected grant persists nothing.
        await self.validate_scopes_for_user(workspace_id, creator_id, normalized_scopes)

        raw_key, key_hash, key_prefix = self._hasher.generate_api_key(self.prefix)
        api_key = await self._store.put_version(
            ApiKey(
                key_hash=key_hash,
                key_prefix=key_prefix,
                user_id=user_id or creator_id,
                workspace_id=workspace_id,
                name=name,
                description=description,
                scopes=normalized_scopes,
                expires_at=expires_at,
                created_by=creator_id,
            )
        )
        logger.info("api_key_created key_id=%s workspace_id=%s", api_key.id, workspace_id)
        await self._audit.log(
            actor_id=creator_id,
            action="api_key.created",
            workspace_id=workspace_id,
            target_type="api_key",
            target_id=api_key.id,
            metadata={"name": name, "scopes": list(normalized_scopes), "key_prefix": key_prefix},
            context=context,
        )
        return raw_key, api_key

    async def find_by_token(self, raw_key: str) -> ApiKey | None:
        versions = await self._store.resolve_versions(ApiKey, key_hash=self._hasher.hash_token(raw_key))
        current = current_versions(versions)
        if not current:
            return None
        return max(current.values(), key=lambda api_key: api_key.updated_at)

    async def _current(self, key_id: str) -> ApiKey | None:
        versions = await self._store.resolve_versions(ApiKey, id=key_id)
        return current_versions(versions).get(key_id)

    async def get(self, key_id: str) -> ApiKey:
        api_key = await self._current(key_id)
        if api_key is None:
            raise NotFoundError(f"API key {key_id} not found", code="API_KEY_NOT_FOUND")
        return api_key

    async def list_keys(
        self,
        *,
        workspace_id: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[ApiKey]:
        # Binding fields never change across versions; status is matched on the
        # current value only.
        filters = {
            name: value
            for name, value in (("workspace_id", workspace_id), ("user_id", user_id))
            if value is not None
        }
        versions = await self._store.resolve_versions(ApiKey, **filters)
        keys = [
            api_key
            for api_key in current_versions(versions).values()
            if status is None or api_key.status == status
        ]
        keys.sort(key=lambda api_key: api_key.created_at, reverse=True)
        return keys

    async def revoke(
        self,
        key_id: str,
        revoked_by: str,
        *,
        context: RequestContext | None = None,
    ) -> ApiKey:
        pending = [task for task, pending_id in self._background.items() if pending_id == key_id]
        if pending:
            await asyncio.gather(*pending)
        api_key = await self.get(key_id)
        # Revoking again re-stamps who and when; the key stays revoked either way.
        revoked = await self._store.put_version(
            api_key.evolve(status="revoked", revoked_by=revoked_by, revoked_at=utc_now())
        )
        await self._cache.delete(api_key_cache_key(api_key.key_hash))
        logger.info("api_key_revoked key_id=%s revoked_by=%s", key_id, revoked_by)
        await self._audit.log(
            actor_id=revoked_by,
            action="api_key.revoked",
            workspace_id=api_key.workspace_id,
            target_type="api_key",
            target_id=key_id,
            metadata={"previous_status": api_key.status},
            context=context,
        )
        return revoked

    async def update_expired_status(self, key_id: str) -> ApiKey | None:
        api_key = await self._current(key_id)
        if api_key is None or api_key.status != "active" or not _is_expired(api_key):
            return None
        expired = await self._store.put_version(api_key.evolve(status="expired"))
        await self._cache.delete(api_key_cache_key(api_key.key_hash))
        logger.info("api_key_expired key_id=%s", key_id)
        return expired

    async def update_last_used(self, key_id: str) -> None:
        try:
            api_key = await self._current(key_id)
            # Rewriting a non-active key would carry a stale status forward.
            if api_key is None or api_key.status != "active":
                return
            await self._store.put_version(api_key.evolve(last_used_at=utc_now()))
        except TenantGuardError as exc:
            logger.warning("api_key_last_used_update_failed key_id=%s", key_id, exc_info=exc)

    def _schedule_last_used(self, key_id: str) -> None:
        task = asyncio.create_task(self.update_last_used(key_id))
        self._background[task] = key_id
        task.add_done_callback(lambda done: self._background.pop(done, None))

    async def drain(self) -> None:
        # Wait for pending last-used writes; used on shutdown and in tests.
        if self._background:
            await asyncio.gather(*list(self._background))

    async def authenticate(self, raw_key: str) -> ApiKey:
        if not raw_key.startswith(self.prefix):
            raise UnauthenticatedError("Invalid API key format", code="API_KEY_MALFORMED")
        key_hash = self._hasher.hash_token(raw_key)
        cache_key = api_key_cache_key(key_hash)
        api_key = await self._cache.get(cache_key)
        cached = api_key is not None
        ticket = self._cache.ticket()
        if api_key is None:
            api_key = await self.find_by_token(raw_key)
        if api_key is None:
            raise UnauthenticatedError("Invalid API key", code="API_KEY_NOT_FOUND")
        if api_key.status != "active":
            raise UnauthenticatedError(f"API key is {api_key.status}", code="API_KEY_INACTIVE")
        # A stored "active" status does not mean unexpired; the clock decides.
        if _is_expired(api_key):
            await self._cache.delete(cache_key)
            try:
                await self.update_expired_status(api_key.id)
            except TenantGuardError as exc:
                logger.warning("api_key_expire_transition_failed key_id=%s", api_key.id, exc_info=exc)
            raise UnauthenticatedError("API key has expired", code="API_KEY_EXPIRED")
        if not api_key.workspace_id:
            raise UnauthenticatedError("API key not bound to workspace", code="API_KEY_UNBOUND")
        if not cached:
            await self._cache.set(cache_key, api_key, ticket=ticket)
        self._schedule_last_used(api_key.id)
        return api_key
