"""Append-only versioned store contract.

Every write is a new version; nothing is updated in place. The current value
of an entity is the version with the greatest ``updated_at`` among versions
not covered by a tombstone. Tombstones are best-effort and may land after a
concurrent read, so callers must never rely on their timing.

Multi-row reads always deduplicate by id (latest version wins) *before*
applying filters. Filtering first would let a superseded version (for example
a membership whose role used to be ``owner``) leak into the result.

Stores offer no read-your-writes guarantee: a caller that needs the value it
just wrote must carry it forward instead of re-reading.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Iterable, TypeVar
import logging

from tenantguard.core.errors import TransientError
from tenantguard.domain.entities import VersionedEntity


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=VersionedEntity)
T = TypeVar("T")


def select_latest(versions: Iterable[E]) -> dict[str, E]:
    # Reduce any bag of versions to one winner per id.
    latest: dict[str, E] = {}
    for version in versions:
        current = latest.get(version.id)
        if current is None or version.updated_at > current.updated_at:
            latest[version.id] = version
    return latest


def matches(entity: VersionedEntity, filters: dict[str, Any]) -> bool:
    return all(getattr(entity, key) == value for key, value in filters.items())


def validate_filters(entity_type: type[VersionedEntity], filters: dict[str, Any]) -> None:
    unknown = set(filters) - entity_type.field_names()
    if unknown:
        raise ValueError(f"Unknown filter fields for {entity_type.__name__}: {sorted(unknown)}")


class VersionedStore(ABC):
    """Backend-neutral front for put/tombstone/resolve with caller timeouts."""

    def __init__(self, *, default_timeout_s: float | None = None) -> None:
        self.default_timeout_s = default_timeout_s

    async def put_version(self, entity: E, *, timeout_s: float | None = None) -> E:
        await self._bounded(self._put_version(entity), op="put_version", timeout_s=timeout_s)
        return entity

    async def tombstone(
        self,
        entity_type: type[VersionedEntity],
        entity_id: str,
        *,
        timeout_s: float | None = None,
    ) -> None:
        await self._bounded(
            self._tombstone(entity_type.collection, entity_id),
            op="tombstone",
            timeout_s=timeout_s,
        )

    async def resolve_latest(
        self,
        entity_type: type[E],
        entity_id: str,
        *,
        timeout_s: float | None = None,
    ) -> E | None:
        return await self._bounded(
            self._resolve_latest(entity_type, entity_id),
            op="resolve_latest",
            timeout_s=timeout_s,
        )

    async def resolve_latest_many(
        self,
        entity_type: type[E],
        *,
        timeout_s: float | None = None,
        **filters: Any,
    ) -> list[E]:
        validate_filters(entity_type, filters)
        return await self._bounded(
            self._resolve_latest_many(entity_type, filters),
            op="resolve_latest_many",
            timeout_s=timeout_s,
        )

    async def resolve_versions(
        self,
        entity_type: type[E],
        *,
        timeout_s: float | None = None,
        **filters: Any,
    ) -> list[E]:
        # Every visible version, not deduplicated. Filters apply per version, so
        # only fields that never change across versions make sense here.
        validate_filters(entity_type, filters)
        return await self._bounded(
            self._resolve_versions(entity_type, filters),
            op="resolve_versions",
            timeout_s=timeout_s,
        )

    async def compact(self, *, timeout_s: float | None = None) -> int:
        # Physically drop tombstoned versions; readers never depend on this running.
        return await self._bounded(self._compact(), op="compact", timeout_s=timeout_s)

    async def _bounded(self, call: Awaitable[T], *, op: str, timeout_s: float | None) -> T:
        timeout = self.default_timeout_s if timeout_s is None else timeout_s
        if timeout is None or timeout <= 0:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("store_timeout op=%s timeout_s=%s", op, timeout)
            raise TransientError(f"Store {op} timed out", code="STORE_TIMEOUT") from exc

    @abstractmethod
    async def _put_version(self, entity: VersionedEntity) -> None:
        ...

    @abstractmethod
    async def _tombstone(self, collection: str, entity_id: str) -> None:
        ...

    @abstractmethod
    async def _resolve_latest(self, entity_type: type[E], entity_id: str) -> E | None:
        ...

    @abstractmethod
    async def _resolve_latest_many(self, entity_type: type[E], filters: dict[str, Any]) -> list[E]:
        ...

    @abstractmethod
    async def _resolve_versions(self, entity_type: type[E], filters: dict[str, Any]) -> list[E]:
        ...

    @abstractmethod
    async def _compact(self) -> int:
        ...
