from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar
import time

from tenantguard.core.clock import next_version_timestamp
from tenantguard.core.errors import TransientError
from tenantguard.domain.entities import VersionedEntity
from tenantguard.persistence.versioned import VersionedStore, matches, select_latest


E = TypeVar("E", bound=VersionedEntity)


@dataclass(frozen=True)
class _StoredVersion:
    visible_at: float
    entity: VersionedEntity


@dataclass(frozen=True)
class _StoredTombstone:
    visible_at: float
    tombstoned_at: datetime


class InMemoryVersionedStore(VersionedStore):
    """Single-process store with the same visibility rules as the SQL backend.

    ``read_lag_s`` delays when writes become visible to readers, to exercise
    callers against read-after-write lag. ``latency_s`` delays every call and
    ``available`` simulates an outage.
    """

    def __init__(
        self,
        *,
        read_lag_s: float = 0.0,
        latency_s: float = 0.0,
        default_timeout_s: float | None = None,
    ) -> None:
        super().__init__(default_timeout_s=default_timeout_s)
        self.read_lag_s = read_lag_s
        self.latency_s = latency_s
        self.available = True
        self._versions: dict[str, list[_StoredVersion]] = defaultdict(list)
        self._tombstones: dict[tuple[str, str], list[_StoredTombstone]] = defaultdict(list)

    async def _enter(self) -> float:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        if not self.available:
            raise TransientError("Store unavailable", code="STORE_UNAVAILABLE")
        return time.monotonic()

    async def _put_version(self, entity: VersionedEntity) -> None:
        now = await self._enter()
        self._versions[entity.collection].append(
            _StoredVersion(visible_at=now + self.read_lag_s, entity=entity)
        )

    async def _tombstone(self, collection: str, entity_id: str) -> None:
        now = await self._enter()
        self._tombstones[(collection, entity_id)].append(
            _StoredTombstone(visible_at=now + self.read_lag_s, tombstoned_at=next_version_timestamp())
        )

    def _is_tombstoned(self, entity: VersionedEntity, now: float) -> bool:
        for marker in self._tombstones.get((entity.collection, entity.id), ()):
            if marker.visible_at <= now and marker.tombstoned_at >= entity.updated_at:
                return True
        return False

    def _visible(self, collection: str, now: float) -> list[VersionedEntity]:
        return [
            stored.entity
            for stored in self._versions.get(collection, ())
            if stored.visible_at <= now and not self._is_tombstoned(stored.entity, now)
        ]

    async def _resolve_latest(self, entity_type: type[E], entity_id: str) -> E | None:
        now = await self._enter()
        candidates = [e for e in self._visible(entity_type.collection, now) if e.id == entity_id]
        return select_latest(candidates).get(entity_id)  # type: ignore[return-value]

    async def _resolve_latest_many(self, entity_type: type[E], filters: dict[str, Any]) -> list[E]:
        now = await self._enter()
        latest = select_latest(self._visible(entity_type.collection, now))
        return [entity for entity in latest.values() if matches(entity, filters)]  # type: ignore[misc]

    async def _resolve_versions(self, entity_type: type[E], filters: dict[str, Any]) -> list[E]:
        now = await self._enter()
        return [entity for entity in self._visible(entity_type.collection, now) if matches(entity, filters)]  # type: ignore[misc]

    async def _compact(self) -> int:
        now = await self._enter()
        removed = 0
        for collection, stored_versions in self._versions.items():
            kept = [s for s in stored_versions if not self._is_tombstoned(s.entity, now)]
            removed += len(stored_versions) - len(kept)
            self._versions[collection] = kept
        return removed

    def version_count(self, entity_type: type[VersionedEntity], entity_id: str | None = None) -> int:
        # Raw row count including superseded versions; used by tests and diagnostics.
        return sum(
            1
            for stored in self._versions.get(entity_type.collection, ())
            if entity_id is None or stored.entity.id == entity_id
        )
