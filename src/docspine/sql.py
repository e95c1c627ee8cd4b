"""SQL statement templates for the two-column document schema.

Every table managed by the store has the shape::

    CREATE TABLE "<table>" (
        id   character varying PRIMARY KEY NOT NULL,
        data jsonb NOT NULL DEFAULT '{}'
    )

Table, index and field names are composed with :mod:`psycopg.sql` so they
are always quoted; values are always bound parameters.
"""

from __future__ import annotations

from psycopg import sql

SELECT_ONE = "SELECT id, data FROM {table} WHERE id = %s"
SELECT_ID = "SELECT id FROM {table} WHERE id = %s"
SELECT_MANY = "SELECT id, data FROM {table} WHERE id = ANY(%s)"
INSERT = "INSERT INTO {table} (id, data) VALUES (%s, %s::jsonb)"
UPDATE = "UPDATE {table} SET data = %s::jsonb WHERE id = %s"
UPSERT = (
    "INSERT INTO {table} (id, data) VALUES (%s, %s::jsonb) "
    "ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data"
)
DELETE = "DELETE FROM {table} WHERE id = %s"
BULK_DELETE = "DELETE FROM {table} WHERE id = ANY(%s)"
SET_FIELD = "UPDATE {table} SET data = jsonb_set(data, %s::text[], %s::jsonb, false) WHERE id = %s"

CREATE_TABLE = (
    "CREATE TABLE IF NOT EXISTS {table} "
    "(id character varying PRIMARY KEY NOT NULL, data jsonb NOT NULL DEFAULT '{{}}')"
)
CREATE_INDEX = "CREATE INDEX IF NOT EXISTS {index} ON {table} USING BTREE ((data->>{field}))"
DROP_TABLE = "DROP TABLE IF EXISTS {table} CASCADE"
PURGE_TABLE = "TRUNCATE {table} RESTART IDENTITY CASCADE"

CREATE_TEMP = "CREATE TEMP TABLE {tmp} (id character varying PRIMARY KEY NOT NULL, val {type})"
COPY_TEMP = "COPY {tmp} (id, val) FROM STDIN"
BULK_SET_FIELD = (
    "UPDATE {table} SET data = jsonb_set({table}.data, {path}, to_jsonb({tmp}.val), true) "
    "FROM {tmp} WHERE {tmp}.id = {table}.id"
)
DROP_TEMP = "DROP TABLE IF EXISTS {tmp}"


def on_table(template: str, table: str) -> sql.Composed:
    """Compose a single-table statement."""
    return sql.SQL(template).format(table=sql.Identifier(table))


def bulk_insert(table: str, rows: int) -> sql.Composed:
    """Multi-row ``INSERT`` with ``rows`` (id, data) placeholder pairs."""
    values = sql.SQL(", ").join([sql.SQL("(%s, %s::jsonb)")] * rows)
    return sql.SQL("INSERT INTO {table} (id, data) VALUES {values}").format(
        table=sql.Identifier(table),
        values=values,
    )


def create_index(table: str, field: str) -> sql.Composed:
    """BTREE expression index over ``data->>'field'``."""
    return sql.SQL(CREATE_INDEX).format(
        index=sql.Identifier(f"{table}_{field}_idx"),
        table=sql.Identifier(table),
        field=sql.Literal(field),
    )


def create_temp(tmp: str, sql_type: str) -> sql.Composed:
    return sql.SQL(CREATE_TEMP).format(tmp=sql.Identifier(tmp), type=sql.SQL(sql_type))


def copy_temp(tmp: str) -> sql.Composed:
    return sql.SQL(COPY_TEMP).format(tmp=sql.Identifier(tmp))


def bulk_set_field(table: str, tmp: str, field: str) -> sql.Composed:
    """Join-update patching ``field`` from the temp table's ``val`` column."""
    return sql.SQL(BULK_SET_FIELD).format(
        table=sql.Identifier(table),
        tmp=sql.Identifier(tmp),
        path=sql.SQL("ARRAY[{}]::text[]").format(sql.Literal(field)),
    )


def drop_temp(tmp: str) -> sql.Composed:
    return sql.SQL(DROP_TEMP).format(tmp=sql.Identifier(tmp))


def sql_type_for(value: object) -> str:
    """Column type for a temp-table value column, inferred from a sample value.

    bool is checked first because it is a subclass of int.
    """
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return "character varying"
    if isinstance(value, float):
        return "double precision"
    return "bigint"


__all__ = [
    "on_table",
    "bulk_insert",
    "create_index",
    "create_temp",
    "copy_temp",
    "bulk_set_field",
    "drop_temp",
    "sql_type_for",
]
