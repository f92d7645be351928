from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping, Tuple, Type

from formvault.logging import get_logger
from formvault.storage.entity import Entity
from formvault.storage.errors import QuotaExceeded, RelationAssertionError
from formvault.storage.fields import (
    COMMON_FIELDS,
    LAST_UPDATE_DATE,
    URI,
    DataField,
    validate_identifier,
)

if TYPE_CHECKING:
    from formvault.storage.datastore import Datastore, Principal

logger = get_logger(__name__)


def new_uri() -> str:
    return f"uuid:{uuid.uuid4()}"


@dataclass(frozen=True)
class RelationDef:
    """Logical description of an entity kind: its table and its own columns."""

    table_name: str
    fields: Tuple[DataField, ...]
    entity_class: Type[Entity] = field(default=Entity)

    def __post_init__(self) -> None:
        validate_identifier(self.table_name)
        names = [f.name for f in COMMON_FIELDS] + [f.name for f in self.fields]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(
                f"duplicate field names in {self.table_name}: {sorted(duplicates)}"
            )


class Relation:
    """Handle for a relation that has been asserted against a datastore."""

    def __init__(self, definition: RelationDef, schema_name: str):
        self.definition = definition
        self.schema_name = validate_identifier(schema_name)
        self.fields: Tuple[DataField, ...] = COMMON_FIELDS + tuple(definition.fields)
        self._by_name: Dict[str, DataField] = {f.name: f for f in self.fields}
        self.primary_key = URI
        self.last_update_date = LAST_UPDATE_DATE

    @property
    def table_name(self) -> str:
        return self.definition.table_name

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    def field(self, name: str) -> DataField:
        try:
            return self._by_name[name]
        except KeyError:
            raise ValueError(f"{name} is not a field of {self.table_name}") from None

    def has_field(self, data_field: DataField) -> bool:
        return self._by_name.get(data_field.name) == data_field

    def new_row(self) -> Entity:
        row = self.definition.entity_class(self)
        row.set_string_field(URI, new_uri())
        return row

    def load_row(self, record: Mapping[str, Any]) -> Entity:
        return self.definition.entity_class(self, dict(record))

    def __repr__(self) -> str:
        return f"<Relation {self.qualified_name}>"


class RelationRegistry:
    """Creates each relation at most once per datastore.

    ``get_or_create`` is the only way to reach the cache. A handle is published
    only after the datastore accepted it, so a failed assertion leaves nothing
    behind and the next caller tries again from scratch.
    """

    def __init__(self, datastore: "Datastore", principal: "Principal"):
        self._datastore = datastore
        self._principal = principal
        self._relations: Dict[str, Relation] = {}
        self._lock = threading.Lock()

    def get_or_create(self, definition: RelationDef) -> Relation:
        relation = self._relations.get(definition.table_name)
        if relation is not None:
            return relation
        with self._lock:
            relation = self._relations.get(definition.table_name)
            if relation is not None:
                return relation
            candidate = Relation(definition, self._datastore.default_schema_name)
            try:
                self._datastore.assert_relation(candidate, self._principal)
            except (RelationAssertionError, QuotaExceeded) as exc:
                logger.error(
                    "relation_assert_failed",
                    relation=candidate.qualified_name,
                    error=str(exc),
                )
                raise
            except Exception as exc:
                logger.error(
                    "relation_assert_failed",
                    relation=candidate.qualified_name,
                    error=str(exc),
                )
                raise RelationAssertionError(
                    f"unable to assert relation {candidate.qualified_name}",
                    {"relation": candidate.qualified_name},
                ) from exc
            self._relations[definition.table_name] = candidate
            logger.info("relation_asserted", relation=candidate.qualified_name)
            return candidate

    def cached_count(self) -> int:
        return len(self._relations)

    @property
    def datastore(self) -> "Datastore":
        return self._datastore

    @property
    def principal(self) -> "Principal":
        return self._principal
