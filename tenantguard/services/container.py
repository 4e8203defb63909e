from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from tenantguard.core.config import Settings, get_settings
from tenantguard.persistence.db import build_engine, build_sessionmaker, create_schema
from tenantguard.persistence.memory import InMemoryVersionedStore
from tenantguard.persistence.sql_store import SqlVersionedStore
from tenantguard.persistence.versioned import VersionedStore
from tenantguard.services.audit import AuditLogger
from tenantguard.services.auth.api_keys import ApiKeyManager
from tenantguard.services.auth.hashing import CredentialHasher
from tenantguard.services.auth.sessions import SessionManager
from tenantguard.services.auth.tokens import AccessTokenCodec
from tenantguard.services.auth.users import UserDirectory
from tenantguard.services.authz.middleware import AuthorizationMiddleware
from tenantguard.services.mail import LoggingMailSender, MailSender
from tenantguard.services.members import MembershipManager


logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: VersionedStore
    hasher: CredentialHasher
    audit: AuditLogger
    mail: MailSender
    sessions: SessionManager
    members: MembershipManager
    api_keys: ApiKeyManager
    users: UserDirectory
    authz: AuthorizationMiddleware
    engine: AsyncEngine | None = None

    async def startup(self) -> None:
        if self.engine is not None and self.settings.store_auto_create_schema:
            await create_schema(self.engine)

    async def aclose(self) -> None:
        await self.api_keys.drain()
        if self.engine is not None:
            await self.engine.dispose()


def build_store(settings: Settings) -> tuple[VersionedStore, AsyncEngine | None]:
    timeout_s = settings.store_timeout_ms / 1000 if settings.store_timeout_ms > 0 else None
    if settings.store_backend == "memory":
        logger.info("store_backend_selected backend=memory")
        return InMemoryVersionedStore(read_lag_s=settings.store_read_lag_s, default_timeout_s=timeout_s), None
    if settings.store_backend != "sql":
        raise ValueError(f"Unsupported store backend: {settings.store_backend}")
    engine = build_engine(settings.database_url)
    logger.info("store_backend_selected backend=sql")
    return SqlVersionedStore(build_sessionmaker(engine), default_timeout_s=timeout_s), engine


def build_services(
    settings: Settings | None = None,
    *,
    store: VersionedStore | None = None,
    hasher: CredentialHasher | None = None,
    mail: MailSender | None = None,
) -> Services:
    settings = settings or get_settings()
    engine = None
    if store is None:
        store, engine = build_store(settings)
    hasher = hasher or CredentialHasher()
    mail = mail or LoggingMailSender()
    audit = AuditLogger(store)
    sessions = SessionManager(
        store=store,
        hasher=hasher,
        tokens=AccessTokenCodec(settings),
        audit=audit,
        settings=settings,
    )
    members = MembershipManager(store=store, sessions=sessions, audit=audit, settings=settings)
    api_keys = ApiKeyManager(store=store, hasher=hasher, members=members, audit=audit, settings=settings)
    users = UserDirectory(
        store=store,
        hasher=hasher,
        sessions=sessions,
        audit=audit,
        mail=mail,
        settings=settings,
    )
    authz = AuthorizationMiddleware(sessions=sessions, api_keys=api_keys, members=members, store=store)
    return Services(
        settings=settings,
        store=store,
        hasher=hasher,
        audit=audit,
        mail=mail,
        sessions=sessions,
        members=members,
        api_keys=api_keys,
        users=users,
        authz=authz,
        engine=engine,
    )
