from __future__ import annotations

from typing import Any, Dict, Optional


class DatastoreError(Exception):
    """Base class for failures raised by a datastore adapter."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class EntityNotFound(DatastoreError):
    """Raised by ``get_entity`` when no row has the requested URI."""


class QuotaExceeded(DatastoreError):
    """The datastore refused the request because a resource limit was hit.

    Never retried by the stores; it is propagated to the caller unchanged.
    """


class PersistenceFailure(DatastoreError):
    """Connectivity, schema or other storage failure. Callers may retry."""


class RelationAssertionError(PersistenceFailure):
    """A relation could not be created or verified in the datastore."""


class ConstraintViolation(Exception):
    """Raised when a storage-layer constraint on a row is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class FieldOverflow(ConstraintViolation):
    """A value is longer than the declared maximum length of its field."""


class IllegalStateTransition(ConstraintViolation):
    """A row was asked to leave a terminal state (e.g. un-remove a user)."""


__all__ = [
    "DatastoreError",
    "EntityNotFound",
    "QuotaExceeded",
    "PersistenceFailure",
    "RelationAssertionError",
    "ConstraintViolation",
    "FieldOverflow",
    "IllegalStateTransition",
]
