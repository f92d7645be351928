from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from pydantic import BaseModel

from formvault.logging import get_logger
from formvault.storage.datastore import Direction, FilterOperation, Principal
from formvault.storage.entity import Entity
from formvault.storage.errors import DatastoreError, PersistenceFailure, QuotaExceeded
from formvault.storage.fields import DataField, DataType
from formvault.storage.relation import Relation, RelationDef, RelationRegistry, new_uri

logger = get_logger(__name__)

KEY = DataField("KEY", DataType.STRING, nullable=True, max_length=128)
VALUE = DataField("VALUE", DataType.STRING, nullable=True, max_bytes=20480)

SERVER_PREFERENCES = RelationDef("_server_preferences_properties", (KEY, VALUE))

SITE_KEY = "SITE_KEY"
LAST_KNOWN_REALM_STRING = "LAST_KNOWN_REALM_STRING"
GOOGLE_SIMPLE_API_KEY = "GOOG_SIMPLE_API_KEY"
GOOGLE_API_CLIENT_ID = "GOOGLE_CLIENT_ID"
GOOGLE_API_SERVICE_ACCOUNT_EMAIL = "GOOGLE_SERVICE_ACCOUNT_EMAIL"
PRIVATE_KEY_FILE_CONTENTS = "PRIVATE_KEY_FILE_CONTENTS"
ENKETO_API_URL = "ENKETO_API_URL"
ENKETO_API_TOKEN = "ENKETO_API_TOKEN"
FASTER_WATCHDOG_CYCLE_ENABLED = "FASTER_WATCHDOG_CYCLE_ENABLED"
FASTER_BACKGROUND_ACTIONS_DISABLED = "FASTER_BACKGROUND_ACTIONS_DISABLED"
SKIP_MALFORMED_SUBMISSIONS = "SKIP_MALFORMED_SUBMISSIONS"


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Show at most the last four characters of a stored credential."""
    if value is None:
        return None
    if len(value) <= 8:
        return "***"
    return "***" + value[-4:]


class PreferenceSummary(BaseModel):
    """Read-only view of the known preferences with credentials masked."""

    google_simple_api_key: Optional[str] = None
    google_api_client_id: Optional[str] = None
    enketo_api_url: Optional[str] = None
    enketo_api_token: Optional[str] = None
    skip_malformed_submissions: bool = False
    faster_watchdog_cycle_enabled: bool = False
    faster_background_actions_disabled: bool = False


class ServerPreferences:
    """Named string properties; the most recently updated row for a key wins.

    Keys are not unique in storage. Reads sort by ``_LAST_UPDATE_DATE``
    descending and take the first row, and writes update that same row in
    place, so duplicates (for example from a concurrent first write) are
    harmless and never multiply.
    """

    def __init__(self, registry: RelationRegistry, principal: Optional[Principal] = None):
        self.registry = registry
        self.principal = principal or registry.principal

    @property
    def _datastore(self):
        return self.registry.datastore

    def _relation(self) -> Relation:
        return self.registry.get_or_create(SERVER_PREFERENCES)

    @contextmanager
    def _storage_errors(self, operation: str, key: str) -> Iterator[None]:
        try:
            yield
        except (QuotaExceeded, PersistenceFailure):
            raise
        except DatastoreError as exc:
            raise PersistenceFailure(
                f"server preference {operation} failed for {key}",
                {"key": key, "operation": operation, **exc.detail},
            ) from exc

    def _latest_row(self, relation: Relation, key: str, tag: str) -> Optional[Entity]:
        query = self._datastore.create_query(relation, tag, self.principal)
        query.add_filter(KEY, FilterOperation.EQUAL, key)
        query.add_sort(relation.last_update_date, Direction.DESCENDING)
        rows = query.execute()
        return rows[0] if rows else None

    def get(self, key: str) -> Optional[str]:
        """Return the value of ``key``, or ``None`` if it was never set."""
        with self._storage_errors("get", key):
            relation = self._relation()
            row = self._latest_row(relation, key, "ServerPreferences.get")
        return None if row is None else row.get_field(VALUE)

    def set(self, key: str, value: Optional[str]) -> None:
        """Store ``value`` under ``key``.

        Raises :class:`FieldOverflow` before touching storage when the key or
        value is too long; an existing value is left as it was.
        """
        with self._storage_errors("set", key):
            relation = self._relation()
            # validate on a scratch row so nothing is queried on overflow
            scratch = relation.load_row({})
            scratch.set_string_field(KEY, key)
            scratch.set_string_field(VALUE, value)

            row = self._latest_row(relation, key, "ServerPreferences.set")
            if row is None:
                row = self._datastore.create_entity(relation, self.principal)
                row.set_string_field(KEY, key)
            row.set_string_field(VALUE, value)
            self._datastore.put_entity(row, self.principal)
        logger.debug("server_preference_set", key=key)

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        if value is None:
            return False
        return value.strip().lower() == "true"

    def set_bool(self, key: str, value: bool) -> None:
        self.set(key, "true" if value else "false")

    def get_site_key(self) -> str:
        value = self.get(SITE_KEY)
        if value is None:
            value = new_uri()
            self.set(SITE_KEY, value)
            logger.info("site_key_synthesized")
        return value

    def set_site_key(self, site_key: str) -> None:
        self.set(SITE_KEY, site_key)

    def get_last_known_realm_string(self) -> Optional[str]:
        return self.get(LAST_KNOWN_REALM_STRING)

    def set_last_known_realm_string(self, realm_string: Optional[str]) -> None:
        self.set(LAST_KNOWN_REALM_STRING, realm_string)

    def get_google_simple_api_key(self) -> Optional[str]:
        return self.get(GOOGLE_SIMPLE_API_KEY)

    def set_google_simple_api_key(self, api_key: Optional[str]) -> None:
        self.set(GOOGLE_SIMPLE_API_KEY, api_key)

    def get_google_api_client_id(self) -> Optional[str]:
        return self.get(GOOGLE_API_CLIENT_ID)

    def set_google_api_client_id(self, client_id: Optional[str]) -> None:
        self.set(GOOGLE_API_CLIENT_ID, client_id)

    def get_google_service_account_email(self) -> Optional[str]:
        return self.get(GOOGLE_API_SERVICE_ACCOUNT_EMAIL)

    def set_google_service_account_email(self, email: Optional[str]) -> None:
        self.set(GOOGLE_API_SERVICE_ACCOUNT_EMAIL, email)

    def get_private_key_file_contents(self) -> Optional[str]:
        return self.get(PRIVATE_KEY_FILE_CONTENTS)

    def set_private_key_file_contents(self, contents: Optional[str]) -> None:
        self.set(PRIVATE_KEY_FILE_CONTENTS, contents)

    def get_enketo_api_url(self) -> Optional[str]:
        return self.get(ENKETO_API_URL)

    def set_enketo_api_url(self, url: Optional[str]) -> None:
        self.set(ENKETO_API_URL, url)

    def get_enketo_api_token(self) -> Optional[str]:
        return self.get(ENKETO_API_TOKEN)

    def set_enketo_api_token(self, token: Optional[str]) -> None:
        self.set(ENKETO_API_TOKEN, token)

    def get_faster_watchdog_cycle_enabled(self) -> bool:
        return self.get_bool(FASTER_WATCHDOG_CYCLE_ENABLED)

    def set_faster_watchdog_cycle_enabled(self, enabled: bool) -> None:
        self.set_bool(FASTER_WATCHDOG_CYCLE_ENABLED, enabled)

    def get_faster_background_actions_disabled(self) -> bool:
        return self.get_bool(FASTER_BACKGROUND_ACTIONS_DISABLED)

    def set_faster_background_actions_disabled(self, disabled: bool) -> None:
        self.set_bool(FASTER_BACKGROUND_ACTIONS_DISABLED, disabled)

    def get_skip_malformed_submissions(self) -> bool:
        return self.get_bool(SKIP_MALFORMED_SUBMISSIONS)

    def set_skip_malformed_submissions(self, skip: bool) -> None:
        self.set_bool(SKIP_MALFORMED_SUBMISSIONS, skip)

    def preference_summary(self) -> PreferenceSummary:
        return PreferenceSummary(
            google_simple_api_key=mask_secret(self.get_google_simple_api_key()),
            google_api_client_id=self.get_google_api_client_id(),
            enketo_api_url=self.get_enketo_api_url(),
            enketo_api_token=mask_secret(self.get_enketo_api_token()),
            skip_malformed_submissions=self.get_skip_malformed_submissions(),
            faster_watchdog_cycle_enabled=self.get_faster_watchdog_cycle_enabled(),
            faster_background_actions_disabled=self.get_faster_background_actions_disabled(),
        )
