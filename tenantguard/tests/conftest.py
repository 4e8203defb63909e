from __future__ import annotations

import pytest

from tenantguard.core.config import Settings, get_settings
from tenantguard.persistence.memory import InMemoryVersionedStore
from tenantguard.services.auth.hashing import CredentialHasher
from tenantguard.services.container import Services, build_services
from tenantguard.services.mail import LoggingMailSender


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Keep env overrides from leaking between tests through the cached settings.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        store_timeout_ms=0,
        session_jwt_secret="test-session-secret-with-enough-entropy-0123456789",
        log_level="WARNING",
    )


@pytest.fixture
def store() -> InMemoryVersionedStore:
    return InMemoryVersionedStore()


@pytest.fixture
def hasher() -> CredentialHasher:
    # Minimal argon2 cost so password hashing does not dominate test time.
    return CredentialHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def mail() -> LoggingMailSender:
    return LoggingMailSender()


@pytest.fixture
def services(
    settings: Settings,
    store: InMemoryVersionedStore,
    hasher: CredentialHasher,
    mail: LoggingMailSender,
) -> Services:
    return build_services(settings, store=store, hasher=hasher, mail=mail)
