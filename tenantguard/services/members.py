from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator
import logging

from tenantguard.core.config import Settings
from tenantguard.core.errors import ConflictError, ForbiddenError, NotFoundError
from tenantguard.domain.entities import WorkspaceMembership
from tenantguard.persistence.versioned import VersionedStore, select_latest
from tenantguard.services.audit import AuditLogger, RequestContext
from tenantguard.services.auth.sessions import SessionManager
from tenantguard.services.authz.permissions import (
    can_modify_member,
    has_permission,
    normalize_role,
    role_rank,
)


logger = logging.getLogger(__name__)


def _not_a_member() -> ForbiddenError:
    return ForbiddenError("Not a member of this workspace", code="NOT_A_MEMBER")


class MembershipManager:
    """Workspace membership lifecycle over the versioned store.

    Every guard runs before the first write, so a rejected call leaves no
    partial state. Mutations for one workspace can be serialized through an
    in-process lock; reads and authorization checks never take it. Another
    process writing the same workspace is not covered by the lock, so the
    owner-count check is still check-then-act across processes.
    """

    def __init__(
        self,
        *,
        store: VersionedStore,
        sessions: SessionManager,
        audit: AuditLogger,
        settings: Settings,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._audit = audit
        self._serialize_writes = settings.membership_serialize_writes
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @asynccontextmanager
    async def _writer(self, workspace_id: str) -> AsyncIterator[None]:
        if not self._serialize_writes:
            yield
            return
        lock = self._locks.get(workspace_id)
        if lock is None:
            lock = self._locks[workspace_id] = asyncio.Lock()
        # Holders and waiters; the lock is dropped once nobody needs it.
        self._lock_users[workspace_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workspace_id] -= 1
            if not self._lock_users[workspace_id]:
                del self._lock_users[workspace_id]
                del self._locks[workspace_id]

    async def get_membership(self, workspace_id: str, user_id: str) -> WorkspaceMembership | None:
        rows = await self._store.resolve_latest_many(
            WorkspaceMembership,
            workspace_id=workspace_id,
            user_id=user_id,
        )
        if not rows:
            return None
        # A user re-added after removal gets a new membership id; the newest wins.
        return max(select_latest(rows).values(), key=lambda row: row.updated_at)

    async def _require_actor(self, workspace_id: str, actor_id: str) -> WorkspaceMembership:
        membership = await self.get_membership(workspace_id, actor_id)
        if membership is None:
            raise _not_a_member()
        return membership

    async def _require_target(self, workspace_id: str, user_id: str) -> WorkspaceMembership:
        membership = await self.get_membership(workspace_id, user_id)
        if membership is None:
            raise NotFoundError("Member not found", code="MEMBER_NOT_FOUND")
        return membership

    async def count_owners(self, workspace_id: str) -> int:
        # Re-derived on every call that could reduce the owner count; never cached.
        owners = await self._store.resolve_latest_many(
            WorkspaceMembership,
            workspace_id=workspace_id,
            role="owner",
        )
        return len({owner.user_id for owner in owners})

    async def list_members(self, workspace_id: str, actor_id: str) -> list[WorkspaceMembership]:
        await self._require_actor(workspace_id, actor_id)
        members = await self._store.resolve_latest_many(WorkspaceMembership, workspace_id=workspace_id)
        members.sort(key=lambda member: (-role_rank(member.role), member.joined_at))
        return members

    async def get_member(self, workspace_id: str, user_id: str, actor_id: str) -> WorkspaceMembership:
        await self._require_actor(workspace_id, actor_id)
        return await self._require_target(workspace_id, user_id)

    async def create_workspace_owner(
        self,
        workspace_id: str,
        user_id: str,
        *,
        context: RequestContext | None = None,
    ) -> WorkspaceMembership:
        async with self._writer(workspace_id):
            existing = await self._store.resolve_latest_many(WorkspaceMembership, workspace_id=workspace_id)
            if existing:
                raise ConflictError("Workspace already has members", code="WORKSPACE_EXISTS")
            membership = await self._store.put_version(
                WorkspaceMembership(workspace_id=workspace_id, user_id=user_id, role="owner")
            )
        logger.info("workspace_owner_created workspace_id=%s user_id=%s", workspace_id, user_id)
        await self._audit.log(
            actor_id=user_id,
            action="member.added",
            workspace_id=workspace_id,
            target_type="membership",
            target_id=membership.id,
            metadata={"user_id": user_id, "role": "owner"},
            context=context,
        )
        return membership

    async def add_member(
        self,
        workspace_id: str,
        user_id: str,
        role: str,
        invited_by: str,
        *,
        context: RequestContext | None = None,
    ) -> WorkspaceMembership:
        role = normalize_role(role)
        async with self._writer(workspace_id):
            inviter = await self._require_actor(workspace_id, invited_by)
            if not has_permission(inviter.role, "members.invite"):
                raise ForbiddenError("Insufficient permissions to invite members", code="INSUFFICIENT_PERMISSIONS")
            if not can_modify_member(inviter.role, role):
                raise ForbiddenError(
                    "Cannot invite a member with your rank or higher",
                    code="ROLE_ESCALATION_FORBIDDEN",
                )
            if await self.get_membership(workspace_id, user_id) is not None:
                raise ConflictError("User is already a member of this workspace", code="ALREADY_A_MEMBER")
            membership = await self._store.put_version(
                WorkspaceMembership(
                    workspace_id=workspace_id,
                    user_id=user_id,
                    role=role,
                    invited_by=invited_by,
                )
            )
        await self._audit.log(
            actor_id=invited_by,
            action="member.added",
            workspace_id=workspace_id,
            target_type="membership",
            target_id=membership.id,
            metadata={"user_id": user_id, "role": role},
            context=context,
        )
        return membership

    async def update_role(
        self,
        workspace_id: str,
        target_id: str,
        new_role: str,
        actor_id: str,
        *,
        context: RequestContext | None = None,
    ) -> WorkspaceMembership:
        new_role = normalize_role(new_role)
        async with self._writer(workspace_id):
            actor = await self._require_actor(workspace_id, actor_id)
            if not has_permission(actor.role, "members.manage"):
                raise ForbiddenError("Insufficient permissions to manage members", code="INSUFFICIENT_PERMISSIONS")
            target = await self._require_target(workspace_id, target_id)
            if actor_id == target_id:
                raise ConflictError("Cannot modify your own role", code="SELF_MODIFICATION")
            if not can_modify_member(actor.role, target.role):
                raise ForbiddenError(
                    "Cannot modify a member with equal or higher role",
                    code="ROLE_HIERARCHY_VIOLATION",
                )
            # Owners may name co-owners. Anyone else promoting to owner fails
            # the rank check before the owner rule is reached.
            owner_to_owner = new_role == "owner" and actor.role == "owner"
            if not owner_to_owner and role_rank(new_role) >= role_rank(actor.role):
                raise ForbiddenError("Cannot promote to your rank or higher", code="ROLE_ESCALATION_FORBIDDEN")
            if new_role == "owner" and actor.role != "owner":
                raise ForbiddenError("Only owners can promote members to owner", code="OWNER_PROMOTION_FORBIDDEN")
            updated = await self._store.put_version(target.evolve(role=new_role))
        logger.info(
            "member_role_updated workspace_id=%s user_id=%s old_role=%s new_role=%s",
            workspace_id,
            target_id,
            target.role,
            new_role,
        )
        await self._audit.log(
            actor_id=actor_id,
            action="member.role_updated",
            workspace_id=workspace_id,
            target_type="membership",
            target_id=target.id,
            metadata={"user_id": target_id, "old_role": target.role, "new_role": new_role},
            context=context,
        )
        # Carry the written version forward; a re-read may not observe it yet.
        return updated

    async def remove(
        self,
        workspace_id: str,
        target_id: str,
        actor_id: str,
        *,
        context: RequestContext | None = None,
    ) -> None:
        async with self._writer(workspace_id):
            actor = await self._require_actor(workspace_id, actor_id)
            target = await self._require_target(workspace_id, target_id)
            if actor_id == target_id:
                raise ConflictError(
                    "Cannot remove yourself. Use the leave endpoint instead",
                    code="SELF_MODIFICATION",
                )
            # The last-owner invariant holds whoever the actor is.
            if target.role == "owner" and await self.count_owners(workspace_id) <= 1:
                raise ConflictError("Cannot remove the last owner. Transfer ownership first", code="LAST_OWNER")
            if not has_permission(actor.role, "members.remove"):
                raise ForbiddenError("Insufficient permissions to remove members", code="INSUFFICIENT_PERMISSIONS")
            if target.role == "owner":
                if actor.role != "owner":
                    raise ForbiddenError("Only owners can remove other owners", code="OWNER_REMOVAL_FORBIDDEN")
            elif not can_modify_member(actor.role, target.role):
                raise ForbiddenError(
                    "Cannot remove a member with equal or higher role",
                    code="ROLE_HIERARCHY_VIOLATION",
                )
            await self._store.tombstone(WorkspaceMembership, target.id)
        revoked = await self._sessions.revoke_all(target_id, actor_id=actor_id, context=context)
        logger.info(
            "member_removed workspace_id=%s user_id=%s sessions_revoked=%s",
            workspace_id,
            target_id,
            revoked,
        )
        await self._audit.log(
            actor_id=actor_id,
            action="member.removed",
            workspace_id=workspace_id,
            target_type="membership",
            target_id=target.id,
            metadata={"user_id": target_id, "role": target.role, "sessions_revoked": revoked},
            context=context,
        )

    async def leave(
        self,
        workspace_id: str,
        actor_id: str,
        *,
        context: RequestContext | None = None,
    ) -> None:
        async with self._writer(workspace_id):
            membership = await self.get_membership(workspace_id, actor_id)
            if membership is None:
                raise NotFoundError("Not a member of this workspace", code="NOT_A_MEMBER")
            if membership.role == "owner" and await self.count_owners(workspace_id) <= 1:
                raise ConflictError("Cannot leave as the last owner. Transfer ownership first", code="LAST_OWNER")
            await self._store.tombstone(WorkspaceMembership, membership.id)
        logger.info("member_left workspace_id=%s user_id=%s", workspace_id, actor_id)
        await self._audit.log(
            actor_id=actor_id,
            action="member.left",
            workspace_id=workspace_id,
            target_type="membership",
            target_id=membership.id,
            metadata={"role": membership.role},
            context=context,
        )

    async def transfer_ownership(
        self,
        workspace_id: str,
        actor_id: str,
        new_owner_id: str,
        *,
        context: RequestContext | None = None,
    ) -> tuple[WorkspaceMembership, WorkspaceMembership]:
        async with self._writer(workspace_id):
            actor = await self._require_actor(workspace_id, actor_id)
            if actor.role != "owner":
                raise ForbiddenError("Only owners can transfer ownership", code="OWNER_REQUIRED")
            if actor_id == new_owner_id:
                raise ConflictError("Cannot transfer ownership to yourself", code="SELF_MODIFICATION")
            target = await self.get_membership(workspace_id, new_owner_id)
            if target is None:
                raise NotFoundError("New owner is not a member of this workspace", code="MEMBER_NOT_FOUND")
            # Two independent appends. Promoting first means a failure between
            # them leaves two owners, never zero.
            promoted = await self._store.put_version(target.evolve(role="owner"))
            demoted = await self._store.put_version(actor.evolve(role="admin"))
        logger.info(
            "ownership_transferred workspace_id=%s old_owner=%s new_owner=%s",
            workspace_id,
            actor_id,
            new_owner_id,
        )
        await self._audit.log(
            actor_id=actor_id,
            action="ownership.transferred",
            workspace_id=workspace_id,
            target_type="workspace",
            target_id=workspace_id,
            metadata={"old_owner_id": actor_id, "new_owner_id": new_owner_id},
            context=context,
        )
        return demoted, promoted
