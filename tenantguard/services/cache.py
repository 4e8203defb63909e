from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Generic, TypeVar
import time


V = TypeVar("V")


class TTLCache(Generic[V]):
    """Per-process expiring cache; an optimization only, never a source of truth.

    A TTL of zero disables caching entirely.

    A reader that fills the cache from the store takes a ``ticket()`` before
    its read and passes it to ``set``. The value is dropped when the key was
    invalidated after the ticket was issued, so a slow reader cannot put back
    a version that a concurrent revoke already replaced.

    Expired entries are purged on every access and the map never holds more
    than ``max_entries`` values (oldest dropped first).
    """

    def __init__(self, ttl_s: float, *, max_entries: int = 10_000) -> None:
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[float, V]] = OrderedDict()
        # key -> (ticket at invalidation, monotonic time); oldest first.
        self._invalidations: OrderedDict[str, tuple[int, float]] = OrderedDict()
        # Tickets below this floor predate a forgotten invalidation.
        self._floor = 0
        self._counter = 0
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl_s > 0

    def ticket(self) -> int:
        return self._counter

    def _purge(self, now: float) -> None:
        while self._entries:
            key, (expires_at, _value) = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        # Forgetting an invalidation raises the floor, so tickets older than it
        # are refused outright.
        while self._invalidations:
            key, (issued, recorded_at) = next(iter(self._invalidations.items()))
            if recorded_at + self.ttl_s > now and len(self._invalidations) <= self.max_entries:
                break
            del self._invalidations[key]
            self._floor = max(self._floor, issued)

    def _invalidate(self, key: str, now: float) -> None:
        self._entries.pop(key, None)
        self._counter += 1
        self._invalidations.pop(key, None)
        self._invalidations[key] = (self._counter, now)

    async def get(self, key: str) -> V | None:
        if not self.enabled:
            return None
        now = time.monotonic()
        async with self._lock:
            self._purge(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            return entry[1]

    async def set(self, key: str, value: V, *, ticket: int | None = None) -> bool:
        if not self.enabled:
            return False
        now = time.monotonic()
        async with self._lock:
            self._purge(now)
            if ticket is not None:
                if ticket < self._floor:
                    return False
                invalidated = self._invalidations.get(key)
                if invalidated is not None and invalidated[0] > ticket:
                    return False
            self._entries.pop(key, None)
            self._entries[key] = (now + self.ttl_s, value)
            self._purge(now)
            return True

    async def delete(self, key: str) -> None:
        await self.delete_many([key])

    async def delete_many(self, keys: list[str]) -> None:
        if not self.enabled:
            return
        now = time.monotonic()
        async with self._lock:
            for key in keys:
                self._invalidate(key, now)
            self._purge(now)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._invalidations.clear()
            self._counter += 1
            self._floor = self._counter

    def __len__(self) -> int:
        return len(self._entries)
