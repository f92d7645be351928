from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from formvault.logging import get_logger
from formvault.storage.datastore import Direction, FilterOperation, Principal
from formvault.storage.fields import DataField, DataType
from formvault.storage.relation import RelationDef, RelationRegistry

logger = get_logger(__name__)

REVISION_NAME = DataField("REVISION_NAME", DataType.STRING, nullable=False, max_length=80)
REVISION_DATE = DataField("REVISION_DATE", DataType.DATETIME, nullable=False)

SECURITY_REVISIONS = RelationDef("_security_revisions", (REVISION_NAME, REVISION_DATE))

SUPER_USER_ID = "SUPER_USER_ID"


class SecurityRevisions:
    """Timestamps that tell credential caches when to reload."""

    def __init__(self, registry: RelationRegistry, principal: Optional[Principal] = None):
        self.registry = registry
        self.principal = principal or registry.principal

    def _latest(self, name: str):
        relation = self.registry.get_or_create(SECURITY_REVISIONS)
        query = self.registry.datastore.create_query(
            relation, "SecurityRevisions.latest", self.principal
        )
        query.add_filter(REVISION_NAME, FilterOperation.EQUAL, name)
        query.add_sort(relation.last_update_date, Direction.DESCENDING)
        rows = query.execute()
        return relation, (rows[0] if rows else None)

    def get_revision_date(self, name: str) -> Optional[datetime]:
        _, row = self._latest(name)
        return None if row is None else row.get_field(REVISION_DATE)

    def set_revision_date(self, name: str, when: Optional[datetime] = None) -> datetime:
        when = when or datetime.now(timezone.utc)
        relation, row = self._latest(name)
        datastore = self.registry.datastore
        if row is None:
            row = datastore.create_entity(relation, self.principal)
            row.set_string_field(REVISION_NAME, name)
        row.set_datetime_field(REVISION_DATE, when)
        datastore.put_entity(row, self.principal)
        logger.info("security_revision_recorded", revision=name, revision_date=when.isoformat())
        return when

    def get_last_super_user_id_revision_date(self) -> Optional[datetime]:
        return self.get_revision_date(SUPER_USER_ID)

    def set_last_super_user_id_revision_date(self) -> datetime:
        return self.set_revision_date(SUPER_USER_ID)
