from __future__ import annotations

from datetime import timedelta

import pytest

from tenantguard.core.clock import utc_now
from tenantguard.core.errors import ForbiddenError, TransientError, UnauthenticatedError, ValidationError
from tenantguard.domain.entities import ApiKey, AuditEvent
from tenantguard.persistence.memory import InMemoryVersionedStore
from tenantguard.services.container import Services, build_services
from tenantguard.tests.utils.auth import create_test_api_key, seed_workspace


async def _workspace(services: Services) -> tuple[str, dict[str, str]]:
    # Owner, admin and editor in one fresh workspace.
    return await seed_workspace(services, {"alice": "owner", "bob": "admin", "carol": "editor"})


async def _assert_auth_error(services: Services, raw_key: str, code: str) -> UnauthenticatedError:
    # Authenticate and require a specific rejection code.
    with pytest.raises(UnauthenticatedError) as exc_info:
        await services.api_keys.authenticate(raw_key)
    assert exc_info.value.code == code
    return exc_info.value


@pytest.mark.asyncio
async def test_created_key_authenticates_and_stores_only_hash(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["bob"], ["analytics.view"])

    api_key = await services.api_keys.authenticate(raw_key)
    await services.api_keys.drain()

    assert api_key.id == key_id
    assert api_key.workspace_id == workspace_id
    assert api_key.key_hash == services.hasher.hash_token(raw_key)
    assert raw_key not in api_key.to_row().values()
    assert "key_hash" not in api_key.public_view()
    assert (await services.api_keys.get(key_id)).last_used_at is not None


@pytest.mark.asyncio
async def test_role_without_integrations_permission_cannot_create_keys(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    with pytest.raises(ForbiddenError) as exc_info:
        await services.api_keys.create(workspace_id, users["carol"], ["analytics.view"], "editor-key")
    assert exc_info.value.code == "INSUFFICIENT_PERMISSIONS"
    # A rejected grant persists nothing.
    assert services.store.version_count(ApiKey) == 0


@pytest.mark.asyncio
async def test_non_member_cannot_create_keys(services: Services) -> None:
    workspace_id, _users = await _workspace(services)
    with pytest.raises(ForbiddenError) as exc_info:
        await services.api_keys.create(workspace_id, "stranger", ["events.track"], "stranger-key")
    assert exc_info.value.code == "NOT_A_MEMBER"


@pytest.mark.asyncio
async def test_scope_without_backing_permission_is_not_grantable(services: Services, monkeypatch) -> None:
    workspace_id, users = await _workspace(services)
    monkeypatch.setattr(
        "tenantguard.services.auth.api_keys.scope_requires_permission",
        lambda scope: "workspace.delete",
    )
    with pytest.raises(ForbiddenError) as exc_info:
        await services.api_keys.create(workspace_id, users["bob"], ["analytics.export"], "export-key")
    assert exc_info.value.code == "SCOPE_NOT_GRANTABLE"
    assert "analytics.export" in exc_info.value.message
    assert services.store.version_count(ApiKey) == 0


@pytest.mark.asyncio
async def test_create_validates_input_before_writing(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    with pytest.raises(ValidationError) as exc_info:
        await services.api_keys.create(workspace_id, users["alice"], ["analytics.view"], "   ")
    assert exc_info.value.code == "INVALID_NAME"
    with pytest.raises(ValidationError) as exc_info:
        await services.api_keys.create(
            workspace_id,
            users["alice"],
            ["analytics.view"],
            "late",
            expires_at=utc_now() - timedelta(minutes=1),
        )
    assert exc_info.value.code == "INVALID_EXPIRY"
    with pytest.raises(ValidationError):
        await services.api_keys.create(workspace_id, users["alice"], ["members.manage"], "bad-scope")
    assert services.store.version_count(ApiKey) == 0


@pytest.mark.asyncio
async def test_revoked_key_is_rejected_even_after_cached_auth(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["workspace.read"])
    await services.api_keys.authenticate(raw_key)
    await services.api_keys.drain()

    await services.api_keys.revoke(key_id, users["alice"])

    error = await _assert_auth_error(services, raw_key, "API_KEY_INACTIVE")
    assert error.message == "API key is revoked"


@pytest.mark.asyncio
async def test_revoking_twice_restamps_revoker(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    _raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])

    first = await services.api_keys.revoke(key_id, users["alice"])
    second = await services.api_keys.revoke(key_id, users["bob"])

    assert first.status == second.status == "revoked"
    assert second.revoked_by == users["bob"]
    assert (await services.api_keys.get(key_id)).revoked_by == users["bob"]
    events = await services.store.resolve_latest_many(AuditEvent, action="api_key.revoked")
    assert len(events) == 2


@pytest.mark.asyncio
async def test_malformed_and_unknown_keys_are_rejected(services: Services) -> None:
    await _assert_auth_error(services, "sk_test_nope", "API_KEY_MALFORMED")
    await _assert_auth_error(services, f"{services.api_keys.prefix}{'0' * 64}", "API_KEY_NOT_FOUND")


@pytest.mark.asyncio
async def test_expired_key_transitions_lazily(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])
    stored = await services.api_keys.get(key_id)
    await services.store.put_version(stored.evolve(expires_at=utc_now() - timedelta(seconds=1)))

    await _assert_auth_error(services, raw_key, "API_KEY_EXPIRED")
    assert (await services.api_keys.get(key_id)).status == "expired"
    error = await _assert_auth_error(services, raw_key, "API_KEY_INACTIVE")
    assert error.message == "API key is expired"


@pytest.mark.asyncio
async def test_update_expired_status_ignores_unexpired_keys(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    _raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])
    assert await services.api_keys.update_expired_status(key_id) is None
    assert await services.api_keys.update_expired_status("missing") is None


@pytest.mark.asyncio
async def test_unbound_key_never_authenticates(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])
    stored = await services.api_keys.get(key_id)
    await services.store.put_version(stored.evolve(workspace_id=None))
    await _assert_auth_error(services, raw_key, "API_KEY_UNBOUND")


@pytest.mark.asyncio
async def test_last_used_failure_does_not_fail_authentication(services: Services, monkeypatch) -> None:
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])

    async def _failing_put(entity, *, timeout_s=None):
        raise TransientError("Store unavailable", code="STORE_UNAVAILABLE")

    monkeypatch.setattr(services.store, "put_version", _failing_put)
    api_key = await services.api_keys.authenticate(raw_key)
    await services.api_keys.drain()

    assert api_key.id == key_id
    assert (await services.api_keys.get(key_id)).last_used_at is None


@pytest.mark.asyncio
async def test_last_used_does_not_resurrect_revoked_key(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    _raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])
    await services.api_keys.revoke(key_id, users["alice"])
    versions = services.store.version_count(ApiKey, key_id)

    await services.api_keys.update_last_used(key_id)

    assert services.store.version_count(ApiKey, key_id) == versions
    assert (await services.api_keys.get(key_id)).status == "revoked"


@pytest.mark.asyncio
async def test_revoke_waits_for_in_flight_last_used_write(settings, hasher) -> None:
    # Store latency keeps the last-used task in flight while revoke starts.
    services = build_services(settings, store=InMemoryVersionedStore(latency_s=0.005), hasher=hasher)
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])

    await services.api_keys.authenticate(raw_key)
    await services.api_keys.revoke(key_id, users["alice"])
    await services.api_keys.drain()

    current = await services.api_keys.get(key_id)
    assert (current.status, current.revoked_by) == ("revoked", users["alice"])
    error = await _assert_auth_error(services, raw_key, "API_KEY_INACTIVE")
    assert error.message == "API key is revoked"


@pytest.mark.asyncio
async def test_stale_write_after_revoke_keeps_key_revoked(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    raw_key, key_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"])
    stale = await services.api_keys.get(key_id)
    await services.api_keys.revoke(key_id, users["alice"])

    # Another writer stamps usage from a read taken before the revoke.
    await services.store.put_version(stale.evolve(last_used_at=utc_now()))
    assert (await services.store.resolve_latest(ApiKey, key_id)).status == "active"

    await _assert_auth_error(services, raw_key, "API_KEY_INACTIVE")
    current = await services.api_keys.get(key_id)
    assert (current.status, current.revoked_by) == ("revoked", users["alice"])
    assert current.last_used_at is not None
    assert await services.api_keys.list_keys(workspace_id=workspace_id, status="active") == []


@pytest.mark.asyncio
async def test_list_keys_filters_by_status(services: Services) -> None:
    workspace_id, users = await _workspace(services)
    _raw_a, active_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"], name="a")
    _raw_b, revoked_id = await create_test_api_key(services, workspace_id, users["alice"], ["events.track"], name="b")
    await services.api_keys.revoke(revoked_id, users["alice"])

    active = await services.api_keys.list_keys(workspace_id=workspace_id, status="active")
    everything = await services.api_keys.list_keys(workspace_id=workspace_id)
    assert [key.id for key in active] == [active_id]
    assert {key.id for key in everything} == {active_id, revoked_id}
