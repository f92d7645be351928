"""Tests for the server preferences key/value store."""

import pytest

from formvault.service.preferences import (
    KEY,
    SERVER_PREFERENCES,
    SITE_KEY,
    VALUE,
    ServerPreferences,
)
from formvault.storage.datastore import DAEMON_PRINCIPAL
from formvault.storage.errors import (
    EntityNotFound,
    FieldOverflow,
    PersistenceFailure,
    QuotaExceeded,
)
from formvault.storage.memory import MemoryDatastore
from formvault.storage.relation import RelationRegistry


@pytest.fixture
def prefs(registry):
    return ServerPreferences(registry)


def _rows_for(registry, key):
    relation = registry.get_or_create(SERVER_PREFERENCES)
    return [
        row
        for row in registry.datastore.create_query(relation, "test", DAEMON_PRINCIPAL).execute()
        if row.get_field(KEY) == key
    ]


class TestGetSet:
    def test_unset_key_is_absent(self, prefs):
        assert prefs.get("NEVER_SET") is None

    def test_second_set_updates_in_place(self, prefs, registry):
        prefs.set("COLOR", "red")
        prefs.set("COLOR", "blue")

        assert prefs.get("COLOR") == "blue"
        assert len(_rows_for(registry, "COLOR")) == 1

    def test_set_none_clears_value(self, prefs):
        prefs.set("COLOR", "red")
        prefs.set("COLOR", None)
        assert prefs.get("COLOR") is None

    def test_latest_duplicate_wins_and_is_the_one_updated(self, prefs, registry):
        relation = registry.get_or_create(SERVER_PREFERENCES)
        datastore = registry.datastore
        for value in ("old", "new"):
            row = datastore.create_entity(relation, DAEMON_PRINCIPAL)
            row.set_string_field(KEY, "DUP")
            row.set_string_field(VALUE, value)
            datastore.put_entity(row, DAEMON_PRINCIPAL)

        assert prefs.get("DUP") == "new"

        prefs.set("DUP", "newest")
        assert prefs.get("DUP") == "newest"
        values = sorted(row.get_field(VALUE) for row in _rows_for(registry, "DUP"))
        assert values == ["newest", "old"]

    def test_oversized_value_rejected_and_prior_value_kept(self, prefs):
        prefs.set("BIG", "small")
        with pytest.raises(FieldOverflow):
            prefs.set("BIG", "x" * 20481)
        assert prefs.get("BIG") == "small"

    def test_value_at_limit_accepted(self, prefs):
        prefs.set("BIG", "x" * 20480)
        assert len(prefs.get("BIG")) == 20480

    def test_multibyte_value_bounded_by_encoded_size(self, prefs):
        prefs.set("BIG", "small")
        # 10241 two-byte characters encode to 20482 bytes
        with pytest.raises(FieldOverflow) as excinfo:
            prefs.set("BIG", "é" * 10241)
        assert excinfo.value.detail["max_bytes"] == 20480
        assert excinfo.value.detail["length"] == 20482
        assert prefs.get("BIG") == "small"

    def test_multibyte_value_at_limit_accepted(self, prefs):
        prefs.set("BIG", "é" * 10240)
        assert prefs.get("BIG") == "é" * 10240

    def test_oversized_key_rejected(self, prefs):
        with pytest.raises(FieldOverflow):
            prefs.set("K" * 129, "v")


class TestTypedAccessors:
    def test_booleans_default_to_false(self, prefs):
        assert prefs.get_skip_malformed_submissions() is False
        assert prefs.get_faster_watchdog_cycle_enabled() is False
        assert prefs.get_faster_background_actions_disabled() is False

    def test_boolean_round_trip_stores_text(self, prefs):
        prefs.set_skip_malformed_submissions(True)
        assert prefs.get_skip_malformed_submissions() is True
        assert prefs.get("SKIP_MALFORMED_SUBMISSIONS") == "true"

        prefs.set_skip_malformed_submissions(False)
        assert prefs.get_skip_malformed_submissions() is False

    def test_site_key_synthesized_once(self, prefs):
        assert prefs.get(SITE_KEY) is None
        first = prefs.get_site_key()
        second = prefs.get_site_key()

        assert first
        assert first == second
        assert prefs.get(SITE_KEY) == first

    def test_summary_reflects_stored_values(self, prefs):
        prefs.set_google_simple_api_key("key-123")
        prefs.set_enketo_api_url("https://enketo.example.org")
        prefs.set_skip_malformed_submissions(True)

        summary = prefs.preference_summary()

        assert summary.google_simple_api_key == "***"
        assert summary.enketo_api_url == "https://enketo.example.org"
        assert summary.enketo_api_token is None
        assert summary.skip_malformed_submissions is True

    def test_summary_masks_credentials(self, prefs):
        prefs.set_google_simple_api_key("AIzaSyExampleKey9876")
        prefs.set_enketo_api_token("enketo-token-abcd")

        summary = prefs.preference_summary()

        assert summary.google_simple_api_key == "***9876"
        assert summary.enketo_api_token == "***abcd"
        assert prefs.get_enketo_api_token() == "enketo-token-abcd"

    def test_last_known_realm_round_trip(self, prefs):
        assert prefs.get_last_known_realm_string() is None
        prefs.set_last_known_realm_string("R1")
        assert prefs.get_last_known_realm_string() == "R1"


class FailingDatastore(MemoryDatastore):
    def __init__(self, error):
        super().__init__()
        self.error = error

    def create_query(self, relation, logging_tag, principal):
        raise self.error


class TestStorageErrors:
    def test_quota_exceeded_propagates_unchanged(self):
        error = QuotaExceeded("over quota")
        prefs = ServerPreferences(RelationRegistry(FailingDatastore(error), DAEMON_PRINCIPAL))
        with pytest.raises(QuotaExceeded) as excinfo:
            prefs.get("ANY")
        assert excinfo.value is error

    def test_other_errors_become_persistence_failures(self):
        prefs = ServerPreferences(
            RelationRegistry(FailingDatastore(EntityNotFound("gone")), DAEMON_PRINCIPAL)
        )
        with pytest.raises(PersistenceFailure):
            prefs.get("ANY")
