from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from formvault.storage.errors import ConstraintViolation, FieldOverflow
from formvault.storage.fields import (
    CREATION_DATE,
    CREATOR_URI_USER,
    LAST_UPDATE_DATE,
    LAST_UPDATE_URI_USER,
    URI,
    DataField,
    DataType,
)

if TYPE_CHECKING:
    from formvault.storage.relation import Relation


class Entity:
    """One row of a relation.

    Rows returned by a query are detached copies; changes are only visible to
    other readers after ``Datastore.put_entity``.
    """

    def __init__(self, relation: "Relation", values: Optional[Dict[str, Any]] = None):
        self.relation = relation
        self._values: Dict[str, Any] = {f.name: f.default for f in relation.fields}
        if values:
            for name, value in values.items():
                if name in self._values:
                    self._values[name] = value

    @property
    def uri(self) -> str:
        return self._values[URI.name]

    @property
    def creator_uri_user(self) -> Optional[str]:
        return self._values[CREATOR_URI_USER.name]

    @property
    def creation_date(self) -> Optional[datetime]:
        return self._values[CREATION_DATE.name]

    @property
    def last_update_uri_user(self) -> Optional[str]:
        return self._values[LAST_UPDATE_URI_USER.name]

    @property
    def last_update_date(self) -> Optional[datetime]:
        return self._values[LAST_UPDATE_DATE.name]

    def _check_field(self, field: DataField, data_type: DataType) -> None:
        if self.relation.field(field.name) != field:
            raise ValueError(f"{field.name} is not a field of {self.relation.table_name}")
        if field.data_type is not data_type:
            raise TypeError(f"{field.name} is a {field.data_type.value} field")

    def get_field(self, field: DataField) -> Any:
        self.relation.field(field.name)
        return self._values[field.name]

    def set_string_field(self, field: DataField, value: Optional[str]) -> None:
        """Assign a string column, rejecting values longer than the column allows."""
        self._check_field(field, DataType.STRING)
        if value is None:
            if not field.nullable:
                raise ConstraintViolation(
                    f"{field.name} may not be null",
                    {"relation": self.relation.table_name, "field": field.name},
                )
        elif field.max_length is not None and len(value) > field.max_length:
            raise FieldOverflow(
                f"{field.name} exceeds {field.max_length} characters",
                {
                    "relation": self.relation.table_name,
                    "field": field.name,
                    "max_length": field.max_length,
                    "length": len(value),
                },
            )
        elif field.max_bytes is not None:
            size = len(value.encode("utf-8"))
            if size > field.max_bytes:
                raise FieldOverflow(
                    f"{field.name} exceeds {field.max_bytes} bytes",
                    {
                        "relation": self.relation.table_name,
                        "field": field.name,
                        "max_bytes": field.max_bytes,
                        "length": size,
                    },
                )
        self._values[field.name] = value

    def set_boolean_field(self, field: DataField, value: Optional[bool]) -> None:
        self._check_field(field, DataType.BOOLEAN)
        if value is None and not field.nullable:
            raise ConstraintViolation(
                f"{field.name} may not be null",
                {"relation": self.relation.table_name, "field": field.name},
            )
        self._values[field.name] = None if value is None else bool(value)

    def set_datetime_field(self, field: DataField, value: Optional[datetime]) -> None:
        self._check_field(field, DataType.DATETIME)
        self._values[field.name] = value

    def to_record(self) -> Dict[str, Any]:
        return dict(self._values)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.relation.table_name} {self.uri}>"
