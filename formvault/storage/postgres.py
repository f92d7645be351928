from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Type

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from formvault.logging import get_logger
from formvault.storage.datastore import Direction, FilterOperation, Principal, Query
from formvault.storage.entity import Entity
from formvault.storage.errors import (
    DatastoreError,
    EntityNotFound,
    PersistenceFailure,
    QuotaExceeded,
    RelationAssertionError,
)
from formvault.storage.fields import (
    CREATION_DATE,
    CREATOR_URI_USER,
    LAST_UPDATE_DATE,
    LAST_UPDATE_URI_USER,
    URI,
    DataField,
    DataType,
    IndexType,
    validate_identifier,
)
from formvault.storage.relation import Relation

# SQLSTATE classes 53 (insufficient resources) and 54 (program limit exceeded)
_QUOTA_SQLSTATE_CLASSES = ("53", "54")

_IMMUTABLE_COLUMNS = {URI.name, CREATION_DATE.name, CREATOR_URI_USER.name}


def quote_ident(name: str) -> str:
    return f'"{validate_identifier(name)}"'


def qualified_table(relation: Relation) -> str:
    return f"{quote_ident(relation.schema_name)}.{quote_ident(relation.table_name)}"


def column_type(field: DataField) -> str:
    if field.data_type is DataType.STRING:
        return f"VARCHAR({field.max_length})" if field.max_length else "TEXT"
    if field.data_type is DataType.BOOLEAN:
        return "BOOLEAN"
    return "TIMESTAMPTZ"


def build_create_table(relation: Relation) -> str:
    columns = []
    for field in relation.fields:
        column = f"{quote_ident(field.name)} {column_type(field)}"
        if field.name == URI.name:
            column += " PRIMARY KEY"
        elif not field.nullable:
            column += " NOT NULL"
        columns.append(column)
    body = ",\n    ".join(columns)
    return f"CREATE TABLE IF NOT EXISTS {qualified_table(relation)} (\n    {body}\n)"


def build_index_statements(relation: Relation) -> List[str]:
    statements = []
    for field in relation.fields:
        if field.index is IndexType.NONE:
            continue
        index_name = quote_ident(f"{relation.table_name}_{field.name.strip('_')}_idx".lower())
        using = " USING hash" if field.index is IndexType.HASH else ""
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {index_name} ON {qualified_table(relation)}"
            f"{using} ({quote_ident(field.name)})"
        )
    return statements


def build_select(
    relation: Relation,
    filters: Sequence[Tuple[DataField, FilterOperation, Any]],
    sorts: Sequence[Tuple[DataField, Direction]],
) -> Tuple[str, List[Any]]:
    sql = f"SELECT * FROM {qualified_table(relation)}"
    params: List[Any] = []
    clauses = []
    for field, op, value in filters:
        if value is None:
            clauses.append(f"{quote_ident(field.name)} IS NULL")
        else:
            clauses.append(f"{quote_ident(field.name)} {op.value} %s")
            params.append(value)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    if sorts:
        order = ", ".join(
            f"{quote_ident(field.name)} {direction.value}" for field, direction in sorts
        )
        sql += f" ORDER BY {order}"
    return sql, params


def build_upsert(relation: Relation, record: Dict[str, Any]) -> Tuple[str, List[Any]]:
    names = [field.name for field in relation.fields]
    columns = ", ".join(quote_ident(name) for name in names)
    placeholders = ", ".join(["%s"] * len(names))
    updates = ", ".join(
        f"{quote_ident(name)} = EXCLUDED.{quote_ident(name)}"
        for name in names
        if name not in _IMMUTABLE_COLUMNS
    )
    sql = (
        f"INSERT INTO {qualified_table(relation)} ({columns}) VALUES ({placeholders}) "
        f"ON CONFLICT ({quote_ident(URI.name)}) DO UPDATE SET {updates}"
    )
    return sql, [record.get(name) for name in names]


class PostgresQuery(Query):
    def __init__(
        self,
        store: "PostgresDatastore",
        relation: Relation,
        logging_tag: str,
        principal: Principal,
    ):
        super().__init__(relation, logging_tag, principal)
        self._store = store

    def execute(self) -> List[Entity]:
        sql, params = build_select(self.relation, self.filters, self.sorts)
        with self._store._translate_errors("query", self.relation):
            with self._store._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        self._store.logger.debug(
            "postgres_query_executed",
            tag=self.logging_tag,
            relation=self.relation.qualified_name,
            rows=len(rows),
        )
        return [self.relation.load_row(row) for row in rows]


class PostgresDatastore:
    """Datastore backed by Postgres through a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        schema_name: str = "public",
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.default_schema_name = validate_identifier(schema_name)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _translate_errors(
        self,
        operation: str,
        relation: Relation,
        failure: Type[DatastoreError] = PersistenceFailure,
    ) -> Iterator[None]:
        try:
            yield
        except psycopg.Error as exc:
            sqlstate = getattr(exc, "sqlstate", None) or ""
            detail = {
                "operation": operation,
                "relation": relation.qualified_name,
                "sqlstate": sqlstate or None,
            }
            if sqlstate[:2] in _QUOTA_SQLSTATE_CLASSES:
                self.logger.error("postgres_quota_exceeded", **detail)
                raise QuotaExceeded(
                    f"datastore quota exceeded during {operation}", detail
                ) from exc
            self.logger.warning("postgres_operation_failed", error=str(exc), **detail)
            raise failure(f"datastore {operation} failed: {exc}", detail) from exc

    def assert_relation(self, relation: Relation, principal: Principal) -> None:
        statements = [
            f"CREATE SCHEMA IF NOT EXISTS {quote_ident(relation.schema_name)}",
            build_create_table(relation),
            *build_index_statements(relation),
        ]
        with self._translate_errors("assert_relation", relation, RelationAssertionError):
            with self._connect() as conn:
                for statement in statements:
                    conn.execute(statement)
                existing = conn.execute(
                    "SELECT column_name FROM information_schema.columns "
                    "WHERE table_schema = %s AND table_name = %s",
                    (relation.schema_name, relation.table_name),
                ).fetchall()
        present = {row["column_name"] for row in existing}
        missing = [field.name for field in relation.fields if field.name not in present]
        if missing:
            raise RelationAssertionError(
                f"relation {relation.qualified_name} is missing columns",
                {"relation": relation.qualified_name, "missing": missing},
            )
        self.logger.info(
            "postgres_relation_asserted",
            relation=relation.qualified_name,
            principal=principal.uri,
        )

    def create_query(
        self, relation: Relation, logging_tag: str, principal: Principal
    ) -> PostgresQuery:
        return PostgresQuery(self, relation, logging_tag, principal)

    def create_entity(self, relation: Relation, principal: Principal) -> Entity:
        return relation.new_row()

    def put_entity(self, entity: Entity, principal: Principal) -> None:
        relation = entity.relation
        stamp = datetime.now(timezone.utc)
        if entity.creation_date is None:
            entity.set_datetime_field(CREATION_DATE, stamp)
            entity.set_string_field(CREATOR_URI_USER, principal.uri)
        entity.set_datetime_field(LAST_UPDATE_DATE, stamp)
        entity.set_string_field(LAST_UPDATE_URI_USER, principal.uri)
        sql, params = build_upsert(relation, entity.to_record())
        with self._translate_errors("put_entity", relation):
            with self._connect() as conn:
                conn.execute(sql, params)

    def get_entity(self, relation: Relation, uri: str, principal: Principal) -> Entity:
        sql, params = build_select(relation, [(URI, FilterOperation.EQUAL, uri)], [])
        with self._translate_errors("get_entity", relation):
            with self._connect() as conn:
                row: Optional[Dict[str, Any]] = conn.execute(sql, params).fetchone()
        if row is None:
            raise EntityNotFound(
                f"no row {uri} in {relation.qualified_name}",
                {"relation": relation.qualified_name, "uri": uri},
            )
        return relation.load_row(row)

    def delete_entities(
        self, relation: Relation, uris: Iterable[str], principal: Principal
    ) -> int:
        targets = list(uris)
        if not targets:
            return 0
        sql = (
            f"DELETE FROM {qualified_table(relation)} "
            f"WHERE {quote_ident(URI.name)} = ANY(%s)"
        )
        with self._translate_errors("delete_entities", relation):
            with self._connect() as conn:
                cursor = conn.execute(sql, (targets,))
                deleted = cursor.rowcount
        self.logger.info(
            "postgres_rows_deleted",
            relation=relation.qualified_name,
            count=deleted,
            principal=principal.uri,
        )
        return deleted

    def close(self) -> None:
        self.pool.close()
