"""Document store engine.

Persists entities as JSON documents in two-column PostgreSQL tables
(``id`` + ``data jsonb``) and publishes a change event after every
committed mutation.

Example::

    with DocumentStore.open("postgresql://app:pw@db:5432/app", bus=bus) as store:
        store.execute_ddl({"users": ["email"]})
        store.insert(User(id="u1", name="Ada"))
        user = store.get(User, "u1")
        store.set_field(User, "u1", "name", "Ada L.")

Sharded entities pass their shard keys to read operations; writes take them
from ``entity.shard_keys()``.
"""

from __future__ import annotations

import builtins
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

import psycopg
from psycopg import sql as pgsql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from docspine import sql
from docspine.connection import LiveConnection, open_connection
from docspine.entity import E, Entity
from docspine.errors import (
    DecodeError,
    DocstoreError,
    EmptyIdentifierError,
    InvalidBatchError,
    NoRowsAffectedError,
    NotFoundError,
    PartialFailureError,
    QueryError,
)
from docspine.events import ChangePublisher, EntityAction, MessageBus
from docspine.logging import get_logger
from docspine.settings import DocstoreSettings, get_settings
from docspine.tables import resolve_table_name

logger = get_logger(__name__)

Statement = str | pgsql.Composable


def _describe(statement: Statement) -> str:
    return statement if isinstance(statement, str) else repr(statement)


def _decode_value(value: Any) -> Any:
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def _decode_entity(entity_type: type[E], data: Any, entity_id: str, table: str) -> E:
    try:
        return entity_type.decode(data)
    except DocstoreError:
        raise
    except Exception as e:
        raise DecodeError(f"cannot decode {entity_type.__name__} document: {e}", cause=e).with_context(
            entity_id=entity_id, table=table
        ) from e


def _table_of(entity: Entity) -> str:
    return resolve_table_name(type(entity).table_name(), *entity.shard_keys())


def _batch_type(entities: Sequence[Entity], operation: str) -> type:
    types = {type(entity) for entity in entities}
    if len(types) > 1:
        names = ", ".join(sorted(t.__name__ for t in types))
        raise InvalidBatchError(f"{operation} requires entities of a single type, got: {names}")
    return types.pop()


class DocumentStore:
    """Entity persistence over one :class:`LiveConnection`.

    The store owns its handle: :meth:`close` closes it, and :meth:`clone`
    opens a new one against the same URI while sharing the message bus.
    """

    def __init__(
        self,
        handle: LiveConnection,
        bus: MessageBus | None = None,
        *,
        settings: DocstoreSettings | None = None,
    ):
        self.handle = handle
        self.publisher = ChangePublisher(bus)
        self.settings = settings or get_settings()

    @classmethod
    def open(
        cls,
        uri: str,
        bus: MessageBus | None = None,
        *,
        settings: DocstoreSettings | None = None,
    ) -> DocumentStore:
        """Connect to ``uri`` and return a ready store."""
        handle = open_connection(uri, settings=settings)
        return cls(handle, bus, settings=settings)

    # ── Lifecycle ────────────────────────────────────────────────

    def clone(self) -> DocumentStore:
        """Independent store on a new handle, publishing to the same bus."""
        return DocumentStore(self.handle.clone(), self.publisher.bus, settings=self.settings)

    def close(self) -> None:
        self.handle.close()

    def ping(self, retries: int = 3, interval: int = 1) -> None:
        self.handle.ping(retries, interval)

    def __enter__(self) -> DocumentStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ── Execution helpers ────────────────────────────────────────

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        try:
            with self.handle.connection() as conn:
                yield conn
        except psycopg.Error as e:
            raise QueryError(f"database error: {e}", cause=e) from e

    def _run(
        self,
        conn: psycopg.Connection,
        statement: Statement,
        params: Sequence[Any] | None = None,
        *,
        table: str | None = None,
    ) -> psycopg.Cursor:
        try:
            return conn.execute(statement, params)
        except psycopg.Error as e:
            raise QueryError(f"statement failed: {e}", cause=e).with_context(
                table=table,
                statement=_describe(statement),
            ) from e

    def _execute(self, statement: Statement, params: Sequence[Any] | None = None, *, table: str | None = None) -> int:
        with self._connection() as conn:
            return self._run(conn, statement, params, table=table).rowcount

    # ── Reads ────────────────────────────────────────────────────

    def get(self, entity_type: type[E], entity_id: str, *keys: str) -> E:
        """Fetch and decode one entity.

        Raises:
            EmptyIdentifierError: ``entity_id`` is empty
            NotFoundError: No row with this id
            DecodeError: The stored document does not decode
        """
        if not entity_id:
            raise EmptyIdentifierError("get")

        table = resolve_table_name(entity_type.table_name(), *keys)
        with self._connection() as conn:
            row = self._run(conn, sql.on_table(sql.SELECT_ONE, table), (entity_id,), table=table).fetchone()
        if row is None:
            raise NotFoundError(entity_id, table=table)
        return _decode_entity(entity_type, row[1], entity_id, table)

    def exists(self, entity_type: type[Entity], entity_id: str, *keys: str) -> bool:
        if not entity_id:
            return False
        table = resolve_table_name(entity_type.table_name(), *keys)
        with self._connection() as conn:
            row = self._run(conn, sql.on_table(sql.SELECT_ID, table), (entity_id,), table=table).fetchone()
        return row is not None

    def list(self, entity_type: type[E], entity_ids: Iterable[str], *keys: str) -> builtins.list[E]:
        """Fetch the entities matching ``entity_ids``.

        Missing ids are ignored. Rows that fail to decode are logged and
        skipped.
        """
        ids = builtins.list(entity_ids)
        if not ids:
            return []

        table = resolve_table_name(entity_type.table_name(), *keys)
        with self._connection() as conn:
            rows = self._run(conn, sql.on_table(sql.SELECT_MANY, table), (ids,), table=table).fetchall()

        entities = []
        for row_id, data in rows:
            try:
                entities.append(_decode_entity(entity_type, data, row_id, table))
            except DocstoreError as e:
                logger.warning("list_row_skipped", table=table, entity_id=row_id, error=str(e))
        return entities

    # ── Single writes ────────────────────────────────────────────

    def insert(self, entity: E) -> E:
        entity_id = entity.entity_id()
        if not entity_id:
            raise EmptyIdentifierError("insert")

        table = _table_of(entity)
        affected = self._execute(sql.on_table(sql.INSERT, table), (entity_id, entity.encode()), table=table)
        if affected == 0:
            raise NoRowsAffectedError("insert").with_context(table=table, entity_id=entity_id)

        self.publisher.publish(EntityAction.ADD, entity)
        return entity

    def update(self, entity: E) -> E:
        entity_id = entity.entity_id()
        if not entity_id:
            raise EmptyIdentifierError("update")

        table = _table_of(entity)
        affected = self._execute(sql.on_table(sql.UPDATE, table), (entity.encode(), entity_id), table=table)
        if affected == 0:
            raise NoRowsAffectedError("update").with_context(table=table, entity_id=entity_id)

        self.publisher.publish(EntityAction.UPDATE, entity)
        return entity

    def upsert(self, entity: E) -> E:
        entity_id = entity.entity_id()
        if not entity_id:
            raise EmptyIdentifierError("upsert")

        table = _table_of(entity)
        self._execute(sql.on_table(sql.UPSERT, table), (entity_id, entity.encode()), table=table)
        self.publisher.publish(EntityAction.UPDATE, entity)
        return entity

    def delete(self, entity_type: type[Entity], entity_id: str, *keys: str) -> None:
        """Delete one entity; the deleted entity is the event payload."""
        victim = self.get(entity_type, entity_id, *keys)

        table = resolve_table_name(entity_type.table_name(), *keys)
        affected = self._execute(sql.on_table(sql.DELETE, table), (entity_id,), table=table)
        if affected == 0:
            raise NoRowsAffectedError("delete").with_context(table=table, entity_id=entity_id)

        self.publisher.publish(EntityAction.DELETE, victim)

    # ── Bulk writes ──────────────────────────────────────────────

    def bulk_insert(self, entities: Sequence[Entity]) -> int:
        """Insert all entities with one multi-row statement.

        Raises:
            InvalidBatchError: Mixed entity types or physical tables
        """
        if not entities:
            return 0
        _batch_type(entities, "bulk insert")

        tables = {_table_of(entity) for entity in entities}
        if len(tables) > 1:
            raise InvalidBatchError(
                f"bulk insert requires a single table, got: {', '.join(sorted(tables))}"
            )
        table = tables.pop()

        params: builtins.list[Any] = []
        for entity in entities:
            entity_id = entity.entity_id()
            if not entity_id:
                raise EmptyIdentifierError("bulk insert")
            params.extend((entity_id, entity.encode()))

        affected = self._execute(sql.bulk_insert(table, len(entities)), params, table=table)
        if affected == 0:
            raise NoRowsAffectedError("bulk insert").with_context(table=table)

        for entity in entities:
            self.publisher.publish(EntityAction.ADD, entity)
        return affected

    def bulk_update(self, entities: Sequence[Entity]) -> int:
        """Update all entities in one transaction.

        An entity whose row does not exist fails the batch and rolls back
        every earlier update.
        """
        return self._bulk_write(entities, "bulk update", sql.UPDATE, require_row=True)

    def bulk_upsert(self, entities: Sequence[Entity]) -> int:
        """Insert or update all entities in one transaction."""
        return self._bulk_write(entities, "bulk upsert", sql.UPSERT, require_row=False)

    def _bulk_write(self, entities: Sequence[Entity], operation: str, template: str, *, require_row: bool) -> int:
        if not entities:
            return 0
        _batch_type(entities, operation)

        affected = 0
        with self._connection() as conn:
            with conn.transaction():
                for entity in entities:
                    entity_id = entity.entity_id()
                    if not entity_id:
                        raise EmptyIdentifierError(operation)
                    table = _table_of(entity)
                    if template == sql.UPDATE:
                        params = (entity.encode(), entity_id)
                    else:
                        params = (entity_id, entity.encode())
                    count = self._run(conn, sql.on_table(template, table), params, table=table).rowcount
                    if require_row and count == 0:
                        raise NoRowsAffectedError(operation).with_context(table=table, entity_id=entity_id)
                    affected += count

        for entity in entities:
            self.publisher.publish(EntityAction.UPDATE, entity)
        return affected

    def bulk_delete(self, entity_type: type[Entity], entity_ids: Iterable[str], *keys: str) -> int:
        """Delete many entities with one statement; victims are published."""
        ids = builtins.list(entity_ids)
        if not ids:
            return 0

        victims = self.list(entity_type, ids, *keys)

        table = resolve_table_name(entity_type.table_name(), *keys)
        affected = self._execute(sql.on_table(sql.BULK_DELETE, table), (ids,), table=table)
        if affected == 0:
            raise NoRowsAffectedError("bulk delete").with_context(table=table)

        for victim in victims:
            self.publisher.publish(EntityAction.DELETE, victim)
        return affected

    # ── Field patches ────────────────────────────────────────────

    def set_field(self, entity_type: type[E], entity_id: str, field: str, value: Any, *keys: str) -> E | None:
        """Patch one top-level field in place.

        The field must already exist in the document. Returns the re-read
        entity, or ``None`` when the patch succeeded but the re-read failed
        (no event is published in that case).
        """
        if not entity_id:
            raise EmptyIdentifierError("set field")

        table = resolve_table_name(entity_type.table_name(), *keys)
        affected = self._execute(
            sql.on_table(sql.SET_FIELD, table),
            ([field], Jsonb(value), entity_id),
            table=table,
        )
        if affected == 0:
            raise NoRowsAffectedError("set field").with_context(table=table, entity_id=entity_id, field=field)

        return self._reread_and_publish(entity_type, entity_id, keys)

    def set_fields(
        self,
        entity_type: type[E],
        entity_id: str,
        fields: Mapping[str, Any],
        *keys: str,
        atomic: bool | None = None,
    ) -> E | None:
        """Patch several fields.

        By default fields are applied one by one; the first failure stops the
        sequence and fields already written stay written
        (:class:`PartialFailureError` lists them). With ``atomic=True``, or
        the ``set_fields_atomic`` setting, all patches share one transaction
        and one change event.
        """
        if not fields:
            return None
        if atomic is None:
            atomic = self.settings.set_fields_atomic
        if atomic:
            return self._set_fields_atomic(entity_type, entity_id, fields, keys)

        updated: E | None = None
        applied: builtins.list[str] = []
        for field, value in fields.items():
            try:
                updated = self.set_field(entity_type, entity_id, field, value, *keys)
            except DocstoreError as e:
                if not applied:
                    raise
                raise PartialFailureError(
                    f"set fields stopped at {field!r} after applying {len(applied)} field(s): {e.message}",
                    applied=applied,
                    failed=field,
                    cause=e,
                ).with_context(entity_id=entity_id) from e
            applied.append(field)
        return updated

    def _set_fields_atomic(
        self,
        entity_type: type[E],
        entity_id: str,
        fields: Mapping[str, Any],
        keys: tuple[str, ...],
    ) -> E | None:
        if not entity_id:
            raise EmptyIdentifierError("set fields")

        table = resolve_table_name(entity_type.table_name(), *keys)
        statement = sql.on_table(sql.SET_FIELD, table)
        with self._connection() as conn:
            with conn.transaction():
                for field, value in fields.items():
                    affected = self._run(conn, statement, ([field], Jsonb(value), entity_id), table=table).rowcount
                    if affected == 0:
                        raise NoRowsAffectedError("set fields").with_context(
                            table=table, entity_id=entity_id, field=field
                        )

        return self._reread_and_publish(entity_type, entity_id, keys)

    def _reread_and_publish(self, entity_type: type[E], entity_id: str, keys: tuple[str, ...]) -> E | None:
        try:
            updated = self.get(entity_type, entity_id, *keys)
        except DocstoreError as e:
            logger.warning("patched_entity_reread_failed", entity_id=entity_id, error=str(e))
            return None
        self.publisher.publish(EntityAction.UPDATE, updated)
        return updated

    def bulk_set_fields(self, entity_type: type[Entity], field: str, values: Mapping[str, Any], *keys: str) -> int:
        """Set ``field`` to a per-entity value for many entities at once.

        ``values`` maps entity id to the new value. All values should share a
        type; the temp column type is inferred from the first one. Returns the
        number of rows updated.
        """
        if not values:
            return 0

        table = resolve_table_name(entity_type.table_name(), *keys)
        tmp = f"tmp_{uuid.uuid4().hex}"
        sql_type = sql.sql_type_for(next(iter(values.values())))

        with self._connection() as conn:
            self._run(conn, sql.create_temp(tmp, sql_type), table=tmp)
            try:
                try:
                    with conn.cursor() as cur:
                        with cur.copy(sql.copy_temp(tmp)) as copy:
                            for entity_id, value in values.items():
                                copy.write_row((entity_id, value))
                except psycopg.Error as e:
                    raise QueryError(f"loading {tmp} failed: {e}", cause=e).with_context(table=tmp) from e
                affected = self._run(conn, sql.bulk_set_field(table, tmp, field), table=table).rowcount
            finally:
                try:
                    conn.execute(sql.drop_temp(tmp))
                except psycopg.Error as e:
                    logger.warning("temp_table_drop_failed", table=tmp, error=str(e))

        logger.debug("bulk_set_fields", table=table, field=field, affected=affected)

        if self.publisher.enabled and affected:
            by_id = {entity.entity_id(): entity for entity in self.list(entity_type, values.keys(), *keys)}
            for entity_id in values:
                if entity_id in by_id:
                    self.publisher.publish(EntityAction.UPDATE, by_id[entity_id])
        return affected

    # ── Raw SQL and DDL ──────────────────────────────────────────

    def execute_ddl(self, ddl: Mapping[str, Sequence[str]]) -> None:
        """Create tables and their field indexes.

        ``ddl`` maps table name to the document fields to index. The first
        failing statement is logged and raised; the rest are skipped.
        """
        for table, fields in ddl.items():
            statements = [sql.on_table(sql.CREATE_TABLE, table)]
            statements.extend(sql.create_index(table, field) for field in fields)
            for statement in statements:
                try:
                    self._execute(statement, table=table)
                except QueryError as e:
                    logger.error("ddl_failed", table=table, statement=_describe(statement), error=str(e))
                    raise
            logger.info("table_ensured", table=table, indexes=len(fields))

    def execute_sql(self, statement: Statement, *args: Any) -> int:
        """Run a statement that returns no rows; returns the affected count."""
        return self._execute(statement, args or None)

    def execute_query(self, statement: Statement, *args: Any) -> builtins.list[dict[str, Any]]:
        """Run a query and return rows as ``{column: value}`` dicts."""
        with self._connection() as conn:
            try:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(statement, args or None)
                    if cur.description is None:
                        return []
                    rows = cur.fetchall()
            except psycopg.Error as e:
                raise QueryError(f"query failed: {e}", cause=e).with_context(statement=_describe(statement)) from e
        return [{column: _decode_value(value) for column, value in row.items()} for row in rows]

    def drop_table(self, table: str) -> None:
        self._table_op(sql.on_table(sql.DROP_TABLE, table), table, "table_dropped")

    def purge_table(self, table: str) -> None:
        """Remove every row and reset identity sequences."""
        self._table_op(sql.on_table(sql.PURGE_TABLE, table), table, "table_purged")

    def _table_op(self, statement: Statement, table: str, event: str) -> None:
        try:
            self._execute(statement, table=table)
        except QueryError as e:
            logger.error("table_operation_failed", table=table, statement=_describe(statement), error=str(e))
            raise
        logger.info(event, table=table)

    def __repr__(self) -> str:
        return f"DocumentStore({self.handle!r}, publishing={self.publisher.enabled})"


__all__ = ["DocumentStore"]
