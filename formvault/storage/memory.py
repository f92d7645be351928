from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from formvault.logging import get_logger
from formvault.storage.datastore import Direction, Principal, Query
from formvault.storage.entity import Entity
from formvault.storage.errors import (
    ConstraintViolation,
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
    DataType,
)
from formvault.storage.relation import Relation


def _sort_key(value: Any) -> tuple:
    # nulls sort first ascending
    return (0,) if value is None else (1, value)


class MemoryQuery(Query):
    def __init__(
        self,
        store: "MemoryDatastore",
        relation: Relation,
        logging_tag: str,
        principal: Principal,
    ):
        super().__init__(relation, logging_tag, principal)
        self._store = store

    def execute(self) -> List[Entity]:
        with self._store._data_lock:
            table = self._store._table(self.relation)
            records = [
                record
                for record in table.values()
                if all(record.get(f.name) == value for f, _, value in self.filters)
            ]
            # later sort keys first; list.sort is stable
            for field, direction in reversed(self.sorts):
                records.sort(
                    key=lambda r, name=field.name: _sort_key(r.get(name)),
                    reverse=direction is Direction.DESCENDING,
                )
            rows = [self.relation.load_row(record) for record in records]
        self._store.logger.debug(
            "memory_query_executed",
            tag=self.logging_tag,
            relation=self.relation.qualified_name,
            rows=len(rows),
        )
        return rows


class MemoryDatastore:
    """Thread-safe in-process datastore for development, tests and single nodes.

    Rows are plain dicts keyed by ``_URI``. When ``fs_root`` is given the
    tables are written to ``<fs_root>/state/datastore.json`` after each
    mutation and reloaded on start. ``max_rows`` caps rows per relation and
    is reported as :class:`QuotaExceeded`.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        schema_name: str = "public",
        max_rows: Optional[int] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.default_schema_name = schema_name
        self.max_rows = max_rows
        self._schemas: Dict[str, List[Dict[str, str]]] = {}
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._last_stamp: Optional[datetime] = None
        # RLock: queries and puts may nest inside store-level critical sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _describe(relation: Relation) -> List[Dict[str, str]]:
        return [{"name": f.name, "type": f.data_type.value} for f in relation.fields]

    def _table(self, relation: Relation) -> Dict[str, Dict[str, Any]]:
        try:
            return self._tables[relation.qualified_name]
        except KeyError:
            raise PersistenceFailure(
                f"relation {relation.qualified_name} has not been asserted",
                {"relation": relation.qualified_name},
            ) from None

    def assert_relation(self, relation: Relation, principal: Principal) -> None:
        description = self._describe(relation)
        with self._data_lock:
            existing = self._schemas.get(relation.qualified_name)
            if existing is not None and existing != description:
                raise RelationAssertionError(
                    f"relation {relation.qualified_name} exists with a different layout",
                    {"relation": relation.qualified_name},
                )
            if existing is None:
                self._schemas[relation.qualified_name] = description
                self._tables.setdefault(relation.qualified_name, {})
                self._persist_state()
        self.logger.debug(
            "memory_relation_asserted",
            relation=relation.qualified_name,
            principal=principal.uri,
        )

    def create_query(self, relation: Relation, logging_tag: str, principal: Principal) -> MemoryQuery:
        return MemoryQuery(self, relation, logging_tag, principal)

    def create_entity(self, relation: Relation, principal: Principal) -> Entity:
        return relation.new_row()

    def _next_stamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def put_entity(self, entity: Entity, principal: Principal) -> None:
        relation = entity.relation
        with self._data_lock:
            table = self._table(relation)
            is_new = entity.uri not in table
            if is_new and self.max_rows is not None and len(table) >= self.max_rows:
                raise QuotaExceeded(
                    f"row quota exhausted for {relation.qualified_name}",
                    {"relation": relation.qualified_name, "max_rows": self.max_rows},
                )
            # stamp a staged copy; the caller's row changes only once the write sticks
            staged = relation.load_row(entity.to_record())
            stamp = self._next_stamp()
            if staged.creation_date is None:
                staged.set_datetime_field(CREATION_DATE, stamp)
                staged.set_string_field(CREATOR_URI_USER, principal.uri)
            staged.set_datetime_field(LAST_UPDATE_DATE, stamp)
            staged.set_string_field(LAST_UPDATE_URI_USER, principal.uri)
            record = staged.to_record()
            for field in relation.fields:
                if not field.nullable and record.get(field.name) is None:
                    raise ConstraintViolation(
                        f"{field.name} may not be null",
                        {"relation": relation.qualified_name, "field": field.name},
                    )

            previous = table.get(entity.uri)
            table[entity.uri] = record
            try:
                self._persist_state()
            except PersistenceFailure:
                if previous is None:
                    del table[entity.uri]
                else:
                    table[entity.uri] = previous
                raise

            if entity.creation_date is None:
                entity.set_datetime_field(CREATION_DATE, staged.creation_date)
                entity.set_string_field(CREATOR_URI_USER, staged.creator_uri_user)
            entity.set_datetime_field(LAST_UPDATE_DATE, stamp)
            entity.set_string_field(LAST_UPDATE_URI_USER, principal.uri)

    def get_entity(self, relation: Relation, uri: str, principal: Principal) -> Entity:
        with self._data_lock:
            record = self._table(relation).get(uri)
            if record is None:
                raise EntityNotFound(
                    f"no row {uri} in {relation.qualified_name}",
                    {"relation": relation.qualified_name, "uri": uri},
                )
            return relation.load_row(record)

    def delete_entities(self, relation: Relation, uris: Iterable[str], principal: Principal) -> int:
        with self._data_lock:
            table = self._table(relation)
            removed: Dict[str, Dict[str, Any]] = {}
            for uri in uris:
                record = table.pop(uri, None)
                if record is not None:
                    removed[uri] = record
            if removed:
                try:
                    self._persist_state()
                except PersistenceFailure:
                    table.update(removed)
                    raise
        return len(removed)

    def row_count(self, relation: Relation) -> int:
        with self._data_lock:
            return len(self._table(relation))

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "datastore.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "last_stamp": self._last_stamp.isoformat() if self._last_stamp else None,
            "relations": {
                name: {
                    "fields": self._schemas[name],
                    "rows": [
                        {
                            key: value.isoformat() if isinstance(value, datetime) else value
                            for key, value in record.items()
                        }
                        for record in self._tables.get(name, {}).values()
                    ],
                }
                for name in self._schemas
            },
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise PersistenceFailure(
                f"failed to persist datastore state: {exc}", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        if data.get("last_stamp"):
            self._last_stamp = datetime.fromisoformat(data["last_stamp"])
        for name, payload in data.get("relations", {}).items():
            fields = payload.get("fields", [])
            self._schemas[name] = fields
            datetime_columns = {
                f["name"] for f in fields if f["type"] == DataType.DATETIME.value
            }
            table: Dict[str, Dict[str, Any]] = {}
            for raw in payload.get("rows", []):
                record = {
                    key: datetime.fromisoformat(value)
                    if key in datetime_columns and value is not None
                    else value
                    for key, value in raw.items()
                }
                table[record["_URI"]] = record
            self._tables[name] = table
        self.logger.info(
            "memory_state_loaded",
            path=str(path),
            relations=len(self._schemas),
        )
        return True
