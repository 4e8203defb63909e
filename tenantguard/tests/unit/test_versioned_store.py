from __future__ import annotations

import asyncio

import pytest

from tenantguard.core.errors import TransientError
from tenantguard.domain.entities import User, WorkspaceMembership
from tenantguard.persistence.memory import InMemoryVersionedStore
from tenantguard.persistence.versioned import select_latest


def _membership(role: str = "owner") -> WorkspaceMembership:
    # Minimal membership in a fixed workspace.
    return WorkspaceMembership(workspace_id="ws-store", user_id="u-1", role=role)


@pytest.mark.asyncio
async def test_latest_version_wins() -> None:
    store = InMemoryVersionedStore()
    first = await store.put_version(_membership("viewer"))
    second = await store.put_version(first.evolve(role="editor"))
    resolved = await store.resolve_latest(WorkspaceMembership, first.id)
    assert resolved == second
    assert store.version_count(WorkspaceMembership, first.id) == 2


@pytest.mark.asyncio
async def test_filters_apply_after_dedup() -> None:
    # A demoted owner must not match an owner filter through its old version.
    store = InMemoryVersionedStore()
    owner = await store.put_version(_membership("owner"))
    demoted = await store.put_version(owner.evolve(role="admin"))
    assert await store.resolve_latest_many(WorkspaceMembership, workspace_id="ws-store", role="owner") == []
    assert await store.resolve_latest_many(WorkspaceMembership, role="admin") == [demoted]


@pytest.mark.asyncio
async def test_tombstone_hides_older_versions_only() -> None:
    store = InMemoryVersionedStore()
    membership = await store.put_version(_membership("editor"))
    await store.tombstone(WorkspaceMembership, membership.id)
    assert await store.resolve_latest(WorkspaceMembership, membership.id) is None
    assert await store.resolve_latest_many(WorkspaceMembership, workspace_id="ws-store") == []

    # A version written after the tombstone is visible again.
    revived = await store.put_version(membership.evolve(role="viewer"))
    assert await store.resolve_latest(WorkspaceMembership, membership.id) == revived


@pytest.mark.asyncio
async def test_resolve_versions_returns_visible_history() -> None:
    store = InMemoryVersionedStore()
    first = await store.put_version(_membership("owner"))
    second = await store.put_version(first.evolve(role="admin"))
    other = await store.put_version(WorkspaceMembership(workspace_id="ws-other", user_id="u-1", role="viewer"))

    assert await store.resolve_versions(WorkspaceMembership, id=first.id) == [first, second]
    assert await store.resolve_versions(WorkspaceMembership, workspace_id="ws-other") == [other]

    await store.tombstone(WorkspaceMembership, first.id)
    assert await store.resolve_versions(WorkspaceMembership, id=first.id) == []


@pytest.mark.asyncio
async def test_compact_drops_only_tombstoned_versions() -> None:
    store = InMemoryVersionedStore()
    removed = await store.put_version(_membership("editor"))
    kept = await store.put_version(WorkspaceMembership(workspace_id="ws-store", user_id="u-2", role="viewer"))
    await store.tombstone(WorkspaceMembership, removed.id)

    assert await store.compact() == 1
    assert store.version_count(WorkspaceMembership, removed.id) == 0
    assert await store.resolve_latest(WorkspaceMembership, kept.id) == kept


@pytest.mark.asyncio
async def test_read_lag_hides_fresh_writes() -> None:
    store = InMemoryVersionedStore(read_lag_s=0.05)
    user = await store.put_version(User(email="lag@example.com"))
    assert await store.resolve_latest(User, user.id) is None
    await asyncio.sleep(0.08)
    assert await store.resolve_latest(User, user.id) == user


@pytest.mark.asyncio
async def test_slow_store_raises_retryable_timeout() -> None:
    store = InMemoryVersionedStore(latency_s=0.2)
    with pytest.raises(TransientError) as exc_info:
        await store.resolve_latest(User, "missing", timeout_s=0.01)
    assert exc_info.value.code == "STORE_TIMEOUT"
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_default_timeout_applies_when_caller_passes_none() -> None:
    store = InMemoryVersionedStore(latency_s=0.2, default_timeout_s=0.01)
    with pytest.raises(TransientError) as exc_info:
        await store.put_version(User(email="slow@example.com"))
    assert exc_info.value.code == "STORE_TIMEOUT"


@pytest.mark.asyncio
async def test_unavailable_store_raises_transient_error() -> None:
    store = InMemoryVersionedStore()
    store.available = False
    with pytest.raises(TransientError) as exc_info:
        await store.resolve_latest_many(User)
    assert exc_info.value.code == "STORE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_unknown_filter_field_is_rejected() -> None:
    store = InMemoryVersionedStore()
    with pytest.raises(ValueError):
        await store.resolve_latest_many(User, nickname="x")


def test_select_latest_keeps_one_winner_per_id() -> None:
    first = User(email="a@example.com")
    second = first.evolve(name="renamed")
    other = User(email="b@example.com")
    latest = select_latest([second, other, first])
    assert latest == {first.id: second, other.id: other}
