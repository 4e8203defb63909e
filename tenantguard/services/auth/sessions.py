from __future__ import annotations

from datetime import timedelta
import logging

from tenantguard.core.clock import utc_now
from tenantguard.core.config import Settings
from tenantguard.core.errors import NotFoundError, UnauthenticatedError
from tenantguard.domain.entities import Session, new_id
from tenantguard.domain.identity import SessionIdentity
from tenantguard.persistence.versioned import VersionedStore
from tenantguard.services.audit import AuditLogger, RequestContext
from tenantguard.services.auth.hashing import CredentialHasher
from tenantguard.services.auth.tokens import AccessTokenCodec
from tenantguard.services.cache import TTLCache


logger = logging.getLogger(__name__)


def session_cache_key(session_id: str, user_id: str) -> str:
    return f"session:{session_id}:{user_id}"


def _is_live(session: Session | None, user_id: str) -> bool:
    if session is None or session.user_id != user_id:
        return False
    return session.revoked_at is None and session.expires_at > utc_now()


class SessionManager:
    """Create, validate and revoke login sessions.

    Only live sessions are cached. Every revocation writes the revoked version
    before it invalidates the cache entry, and a validate that read the store
    before that invalidation is not allowed to cache what it read. Another
    process keeps serving its own cached copy until the cache TTL runs out.
    """

    def __init__(
        self,
        *,
        store: VersionedStore,
        hasher: CredentialHasher,
        tokens: AccessTokenCodec,
        audit: AuditLogger,
        settings: Settings,
        cache: TTLCache[Session] | None = None,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._tokens = tokens
        self._audit = audit
        self._ttl = timedelta(days=settings.session_ttl_days)
        self._cache = cache if cache is not None else TTLCache(settings.session_cache_ttl_s)

    async def create_session(
        self,
        user_id: str,
        *,
        email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        context: RequestContext | None = None,
    ) -> tuple[str, str]:
        expires_at = utc_now() + self._ttl
        session_id = new_id()
        raw_token = self._tokens.issue(
            user_id=user_id,
            session_id=session_id,
            email=email,
            expires_at=expires_at,
        )
        session = Session(
            id=session_id,
            user_id=user_id,
            token_hash=self._hasher.hash_token(raw_token),
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._store.put_version(session)
        logger.info("session_created session_id=%s user_id=%s", session.id, user_id)
        await self._audit.log(
            actor_id=user_id,
            action="session.created",
            target_type="session",
            target_id=session.id,
            context=context,
        )
        return session.id, raw_token

    async def _load(self, session_id: str, user_id: str) -> Session | None:
        key = session_cache_key(session_id, user_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        ticket = self._cache.ticket()
        session = await self._store.resolve_latest(Session, session_id)
        if _is_live(session, user_id):
            await self._cache.set(key, session, ticket=ticket)
        return session

    async def validate(self, session_id: str, user_id: str) -> bool:
        session = await self._load(session_id, user_id)
        # Expiry is re-checked on cache hits; the cache never outlives the session.
        return _is_live(session, user_id)

    async def authenticate(self, raw_token: str) -> SessionIdentity:
        claims = self._tokens.decode(raw_token)
        session = await self._load(claims.session_id, claims.user_id)
        if not _is_live(session, claims.user_id):
            raise UnauthenticatedError("Session revoked or expired", code="SESSION_INVALID")
        if not self._hasher.verify_token_hash(raw_token, session.token_hash):
            raise UnauthenticatedError("Invalid session token", code="SESSION_INVALID")
        return SessionIdentity(
            user_id=claims.user_id,
            session_id=claims.session_id,
            email=claims.email,
        )

    async def revoke(
        self,
        session_id: str,
        user_id: str,
        *,
        context: RequestContext | None = None,
    ) -> None:
        session = await self._store.resolve_latest(Session, session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("Session not found", code="SESSION_NOT_FOUND")
        if session.revoked_at is None:
            await self._store.put_version(session.evolve(revoked_at=utc_now()))
        await self._cache.delete(session_cache_key(session_id, user_id))
        logger.info("session_revoked session_id=%s user_id=%s", session_id, user_id)
        await self._audit.log(
            actor_id=user_id,
            action="session.revoked",
            target_type="session",
            target_id=session_id,
            context=context,
        )

    async def revoke_all(
        self,
        user_id: str,
        *,
        actor_id: str | None = None,
        context: RequestContext | None = None,
    ) -> int:
        # Best-effort: a session created while this runs may survive it.
        sessions = await self._store.resolve_latest_many(Session, user_id=user_id, revoked_at=None)
        revoked_at = utc_now()
        for session in sessions:
            await self._store.put_version(session.evolve(revoked_at=revoked_at))
        await self._cache.delete_many([session_cache_key(s.id, user_id) for s in sessions])
        logger.info("sessions_revoked_all user_id=%s count=%s", user_id, len(sessions))
        await self._audit.log(
            actor_id=actor_id or user_id,
            action="session.revoked_all",
            target_type="user",
            target_id=user_id,
            metadata={"count": len(sessions)},
            context=context,
        )
        return len(sessions)

    async def list_sessions(self, user_id: str) -> list[Session]:
        now = utc_now()
        sessions = await self._store.resolve_latest_many(Session, user_id=user_id, revoked_at=None)
        active = [session for session in sessions if session.expires_at > now]
        active.sort(key=lambda session: session.created_at, reverse=True)
        return active
