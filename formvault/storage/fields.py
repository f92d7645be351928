"""Typed column declarations shared by relations, rows and datastore adapters."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DataType(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    DATETIME = "datetime"


class IndexType(str, Enum):
    NONE = "none"
    ORDERED = "ordered"
    HASH = "hash"


def validate_identifier(name: str) -> str:
    """Reject names that cannot be used verbatim as a quoted SQL identifier."""
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise ValueError(f"invalid relation or field name: {name!r}")
    return name


@dataclass(frozen=True)
class DataField:
    name: str
    data_type: DataType
    nullable: bool = True
    max_length: Optional[int] = None
    index: IndexType = IndexType.NONE
    default: Any = None
    # UTF-8 encoded size limit, checked in addition to max_length
    max_bytes: Optional[int] = None

    def __post_init__(self) -> None:
        validate_identifier(self.name)
        if self.max_length is not None:
            if self.data_type is not DataType.STRING:
                raise ValueError(f"max_length only applies to string fields ({self.name})")
            if self.max_length <= 0:
                raise ValueError(f"max_length must be positive ({self.name})")
        if self.max_bytes is not None:
            if self.data_type is not DataType.STRING:
                raise ValueError(f"max_bytes only applies to string fields ({self.name})")
            if self.max_bytes <= 0:
                raise ValueError(f"max_bytes must be positive ({self.name})")


# Bookkeeping columns present on every relation
URI = DataField("_URI", DataType.STRING, nullable=False, max_length=80)
CREATOR_URI_USER = DataField(
    "_CREATOR_URI_USER", DataType.STRING, nullable=False, max_length=80
)
CREATION_DATE = DataField("_CREATION_DATE", DataType.DATETIME, nullable=False)
LAST_UPDATE_URI_USER = DataField(
    "_LAST_UPDATE_URI_USER", DataType.STRING, nullable=True, max_length=80
)
LAST_UPDATE_DATE = DataField(
    "_LAST_UPDATE_DATE",
    DataType.DATETIME,
    nullable=False,
    index=IndexType.ORDERED,
)

COMMON_FIELDS = (URI, CREATOR_URI_USER, CREATION_DATE, LAST_UPDATE_URI_USER, LAST_UPDATE_DATE)
