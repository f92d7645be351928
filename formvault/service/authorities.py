from __future__ import annotations

from typing import List, Optional

from formvault.logging import get_logger
from formvault.storage.datastore import Direction, FilterOperation, Principal
from formvault.storage.fields import DataField, DataType, IndexType
from formvault.storage.relation import Relation, RelationDef, RelationRegistry

logger = get_logger(__name__)

USER = DataField("USER", DataType.STRING, nullable=False, max_length=80, index=IndexType.HASH)
GRANTED_AUTHORITY = DataField("GRANTED_AUTHORITY", DataType.STRING, nullable=False, max_length=80)

USER_GRANTED_AUTHORITY = RelationDef("_user_granted_authority", (USER, GRANTED_AUTHORITY))

ROLE_USER = "ROLE_USER"
ROLE_DATA_COLLECTOR = "ROLE_DATA_COLLECTOR"
ROLE_DATA_VIEWER = "ROLE_DATA_VIEWER"
ROLE_DATA_OWNER = "ROLE_DATA_OWNER"
ROLE_SITE_ACCESS_ADMIN = "ROLE_SITE_ACCESS_ADMIN"

KNOWN_AUTHORITIES = (
    ROLE_USER,
    ROLE_DATA_COLLECTOR,
    ROLE_DATA_VIEWER,
    ROLE_DATA_OWNER,
    ROLE_SITE_ACCESS_ADMIN,
)


class GrantedAuthorities:
    """Rows linking a registered user's URI to an authority name."""

    def __init__(self, registry: RelationRegistry, principal: Optional[Principal] = None):
        self.registry = registry
        self.principal = principal or registry.principal

    def _relation(self) -> Relation:
        return self.registry.get_or_create(USER_GRANTED_AUTHORITY)

    def grant(self, user_uri: str, authority: str) -> None:
        if authority not in KNOWN_AUTHORITIES:
            raise ValueError(f"unknown authority {authority!r}")
        if authority in self.list_for_user(user_uri):
            return
        datastore = self.registry.datastore
        row = datastore.create_entity(self._relation(), self.principal)
        row.set_string_field(USER, user_uri)
        row.set_string_field(GRANTED_AUTHORITY, authority)
        datastore.put_entity(row, self.principal)
        logger.info("authority_granted", user_uri=user_uri, authority=authority)

    def _rows_for_user(self, user_uri: str):
        relation = self._relation()
        query = self.registry.datastore.create_query(
            relation, "GrantedAuthorities.for_user", self.principal
        )
        query.add_filter(USER, FilterOperation.EQUAL, user_uri)
        query.add_sort(GRANTED_AUTHORITY, Direction.ASCENDING)
        return relation, query.execute()

    def list_for_user(self, user_uri: str) -> List[str]:
        _, rows = self._rows_for_user(user_uri)
        return [row.get_field(GRANTED_AUTHORITY) for row in rows]

    def delete_for_user(self, user_uri: str) -> int:
        """Delete every grant held by ``user_uri``; returns the number removed."""
        relation, rows = self._rows_for_user(user_uri)
        if not rows:
            return 0
        deleted = self.registry.datastore.delete_entities(
            relation, [row.uri for row in rows], self.principal
        )
        logger.info("authorities_deleted", user_uri=user_uri, count=deleted)
        return deleted
