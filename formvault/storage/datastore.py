from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Protocol, Tuple

from formvault.storage.entity import Entity
from formvault.storage.fields import DataField
from formvault.storage.relation import Relation


@dataclass(frozen=True)
class Principal:
    """Identity recorded in the creator / last-updater columns of a row."""

    uri: str

    def __str__(self) -> str:
        return self.uri


DAEMON_PRINCIPAL = Principal("daemonAccount")


class FilterOperation(str, Enum):
    EQUAL = "="


class Direction(str, Enum):
    ASCENDING = "ASC"
    DESCENDING = "DESC"


class Query:
    """Equality filters and ordered sorts over one relation.

    Adapters subclass this and implement ``execute``.
    """

    def __init__(self, relation: Relation, logging_tag: str, principal: Principal):
        self.relation = relation
        self.logging_tag = logging_tag
        self.principal = principal
        self.filters: List[Tuple[DataField, FilterOperation, Any]] = []
        self.sorts: List[Tuple[DataField, Direction]] = []

    def add_filter(self, field: DataField, op: FilterOperation, value: Any) -> "Query":
        if not self.relation.has_field(field):
            raise ValueError(f"{field.name} is not a field of {self.relation.table_name}")
        self.filters.append((field, FilterOperation(op), value))
        return self

    def add_sort(self, field: DataField, direction: Direction) -> "Query":
        if not self.relation.has_field(field):
            raise ValueError(f"{field.name} is not a field of {self.relation.table_name}")
        self.sorts.append((field, Direction(direction)))
        return self

    def execute(self) -> List[Entity]:
        raise NotImplementedError


class Datastore(Protocol):
    default_schema_name: str

    def assert_relation(self, relation: Relation, principal: Principal) -> None:
        ...

    def create_query(
        self, relation: Relation, logging_tag: str, principal: Principal
    ) -> Query:
        ...

    def create_entity(self, relation: Relation, principal: Principal) -> Entity:
        ...

    def put_entity(self, entity: Entity, principal: Principal) -> None:
        ...

    def get_entity(self, relation: Relation, uri: str, principal: Principal) -> Entity:
        ...

    def delete_entities(
        self, relation: Relation, uris: Iterable[str], principal: Principal
    ) -> int:
        ...
