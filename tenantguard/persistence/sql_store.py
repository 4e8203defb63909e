from __future__ import annotations

from typing import Any, TypeVar
import logging

from sqlalchemy import Table, and_, delete, exists, func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantguard.core.clock import next_version_timestamp
from tenantguard.core.errors import TransientError
from tenantguard.domain.entities import VersionedEntity
from tenantguard.domain.models import VERSIONED_TABLES, Tombstone
from tenantguard.persistence.versioned import VersionedStore, select_latest


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=VersionedEntity)

# Columns whose value never changes across versions of one id. Pushing these
# into the per-id max() subquery narrows the scan without changing the result.
_PARTITION_COLUMNS: dict[str, frozenset[str]] = {
    "users": frozenset(),
    "sessions": frozenset({"user_id"}),
    "api_keys": frozenset({"key_hash", "user_id"}),
    "workspace_memberships": frozenset({"workspace_id", "user_id"}),
    "password_reset_tokens": frozenset({"user_id", "token_hash"}),
    "audit_events": frozenset({"workspace_id", "action"}),
}

_tombstones = Tombstone.__table__


def _table_for(collection: str) -> Table:
    try:
        return VERSIONED_TABLES[collection]
    except KeyError as exc:
        raise ValueError(f"Unknown collection: {collection}") from exc


def _entity_from_record(entity_type: type[E], table: Table, record: Any) -> E:
    mapping = record._mapping
    return entity_type.from_row({column.name: mapping[column] for column in table.columns})


def _column(table: Table, name: str):
    for column in table.columns:
        if column.name == name:
            return column
    raise ValueError(f"Unknown column {name} on {table.name}")


class SqlVersionedStore(VersionedStore):
    """Versioned store on an append-only SQL table per collection."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        default_timeout_s: float | None = None,
    ) -> None:
        super().__init__(default_timeout_s=default_timeout_s)
        self._sessionmaker = sessionmaker

    async def _execute_write(self, statement: Any, *, op: str) -> int:
        async with self._sessionmaker() as session:
            try:
                result = await session.execute(statement)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("store_write_failed op=%s", op, exc_info=exc)
                raise TransientError("Store unavailable", code="STORE_UNAVAILABLE") from exc
        return int(result.rowcount or 0)

    async def _execute_read(self, statement: Any, *, op: str) -> list[Any]:
        async with self._sessionmaker() as session:
            try:
                result = await session.execute(statement)
            except SQLAlchemyError as exc:
                logger.warning("store_read_failed op=%s", op, exc_info=exc)
                raise TransientError("Store unavailable", code="STORE_UNAVAILABLE") from exc
            return list(result.all())

    async def _put_version(self, entity: VersionedEntity) -> None:
        table = _table_for(entity.collection)
        row = entity.to_row()
        values = {column.key: row[column.name] for column in table.columns if column.name in row}
        await self._execute_write(insert(table).values(**values), op="put_version")

    async def _tombstone(self, collection: str, entity_id: str) -> None:
        _table_for(collection)
        await self._execute_write(
            insert(_tombstones).values(
                collection=collection,
                entity_id=entity_id,
                tombstoned_at=next_version_timestamp(),
            ),
            op="tombstone",
        )

    def _not_tombstoned(self, collection: str, versions: Any) -> Any:
        return ~exists().where(
            _tombstones.c.collection == collection,
            _tombstones.c.entity_id == versions.c.id,
            _tombstones.c.tombstoned_at >= versions.c.updated_at,
        )

    def _latest_statement(self, table: Table, filters: dict[str, Any], *, entity_id: str | None = None) -> Any:
        versions = table.alias("versions")
        latest_query = select(
            versions.c.id.label("latest_id"),
            func.max(versions.c.updated_at).label("latest_updated_at"),
        ).where(self._not_tombstoned(table.name, versions))
        if entity_id is not None:
            latest_query = latest_query.where(versions.c.id == entity_id)
        partition = _PARTITION_COLUMNS.get(table.name, frozenset())
        for name, value in filters.items():
            if name in partition:
                latest_query = latest_query.where(_column(versions, name) == value)
        latest = latest_query.group_by(versions.c.id).subquery("latest")

        statement = select(table).join(
            latest,
            and_(
                table.c.id == latest.c.latest_id,
                table.c.updated_at == latest.c.latest_updated_at,
            ),
        )
        # Filters apply to the winning version only.
        for name, value in filters.items():
            column = _column(table, name)
            statement = statement.where(column.is_(None) if value is None else column == value)
        return statement

    async def _resolve_latest(self, entity_type: type[E], entity_id: str) -> E | None:
        table = _table_for(entity_type.collection)
        records = await self._execute_read(
            self._latest_statement(table, {}, entity_id=entity_id),
            op="resolve_latest",
        )
        entities = [_entity_from_record(entity_type, table, record) for record in records]
        return select_latest(entities).get(entity_id)

    async def _resolve_latest_many(self, entity_type: type[E], filters: dict[str, Any]) -> list[E]:
        table = _table_for(entity_type.collection)
        records = await self._execute_read(
            self._latest_statement(table, filters),
            op="resolve_latest_many",
        )
        entities = [_entity_from_record(entity_type, table, record) for record in records]
        # Equal timestamps from different writers can both survive max(); keep one.
        return list(select_latest(entities).values())

    async def _resolve_versions(self, entity_type: type[E], filters: dict[str, Any]) -> list[E]:
        table = _table_for(entity_type.collection)
        statement = select(table).where(self._not_tombstoned(table.name, table))
        for name, value in filters.items():
            column = _column(table, name)
            statement = statement.where(column.is_(None) if value is None else column == value)
        records = await self._execute_read(statement, op="resolve_versions")
        return [_entity_from_record(entity_type, table, record) for record in records]

    async def _compact(self) -> int:
        removed = 0
        for collection, table in VERSIONED_TABLES.items():
            covered = exists().where(
                _tombstones.c.collection == collection,
                _tombstones.c.entity_id == table.c.id,
                _tombstones.c.tombstoned_at >= table.c.updated_at,
            )
            removed += await self._execute_write(delete(table).where(covered), op="compact")
        return removed
