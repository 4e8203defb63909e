from __future__ import annotations

import asyncio

import pytest

from tenantguard.services.cache import TTLCache


@pytest.mark.asyncio
async def test_cache_expires_entries() -> None:
    cache: TTLCache[str] = TTLCache(0.05)
    await cache.set("a", "value")
    assert await cache.get("a") == "value"
    await asyncio.sleep(0.08)
    assert await cache.get("a") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_zero_ttl_disables_cache() -> None:
    cache: TTLCache[str] = TTLCache(0)
    await cache.set("a", "value")
    assert await cache.get("a") is None
    assert not cache.enabled


@pytest.mark.asyncio
async def test_delete_many_and_clear() -> None:
    cache: TTLCache[int] = TTLCache(60)
    for index, key in enumerate("abc"):
        await cache.set(key, index)
    await cache.delete_many(["a", "b"])
    assert await cache.get("a") is None
    assert await cache.get("c") == 2
    await cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_expired_entries_are_purged_without_rereading_them() -> None:
    cache: TTLCache[int] = TTLCache(0.01)
    for index in range(200):
        await cache.set(f"session:{index}", index)
    assert len(cache) == 200
    await asyncio.sleep(0.05)
    await cache.set("fresh", 1)
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_max_entries_drops_oldest() -> None:
    cache: TTLCache[str] = TTLCache(60, max_entries=3)
    for key in "abcde":
        await cache.set(key, key)
    assert len(cache) == 3
    assert await cache.get("a") is None
    assert await cache.get("e") == "e"


@pytest.mark.asyncio
async def test_fill_started_before_invalidation_is_dropped() -> None:
    cache: TTLCache[str] = TTLCache(60)
    ticket = cache.ticket()
    await cache.delete("k")
    assert await cache.set("k", "stale", ticket=ticket) is False
    assert await cache.get("k") is None

    assert await cache.set("k", "fresh", ticket=cache.ticket()) is True
    assert await cache.get("k") == "fresh"


@pytest.mark.asyncio
async def test_clear_refuses_older_tickets() -> None:
    cache: TTLCache[str] = TTLCache(60)
    ticket = cache.ticket()
    await cache.clear()
    assert await cache.set("k", "stale", ticket=ticket) is False
    assert await cache.set("k", "fresh", ticket=cache.ticket()) is True
