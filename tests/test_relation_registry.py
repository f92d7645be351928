"""Tests for lazy relation creation through RelationRegistry."""

import threading

import pytest

from formvault.storage.datastore import DAEMON_PRINCIPAL
from formvault.storage.errors import (
    PersistenceFailure,
    QuotaExceeded,
    RelationAssertionError,
)
from formvault.storage.fields import DataField, DataType
from formvault.storage.memory import MemoryDatastore
from formvault.storage.relation import RelationDef, RelationRegistry

NAME = DataField("NAME", DataType.STRING, max_length=40)
WIDGETS = RelationDef("_widgets", (NAME,))


class CountingDatastore(MemoryDatastore):
    def __init__(self, failures=()):
        super().__init__()
        self.assert_calls = 0
        self._failures = list(failures)
        self.gate = threading.Event()
        self.gate.set()

    def assert_relation(self, relation, principal):
        self.gate.wait(timeout=5)
        self.assert_calls += 1
        if self._failures:
            raise self._failures.pop(0)
        super().assert_relation(relation, principal)


class TestGetOrCreate:
    def test_first_call_asserts_and_later_calls_reuse(self):
        store = CountingDatastore()
        registry = RelationRegistry(store, DAEMON_PRINCIPAL)

        first = registry.get_or_create(WIDGETS)
        second = registry.get_or_create(WIDGETS)

        assert first is second
        assert store.assert_calls == 1
        assert first.qualified_name == "public._widgets"

    def test_handle_carries_common_fields(self, registry):
        relation = registry.get_or_create(WIDGETS)
        names = [f.name for f in relation.fields]
        assert names[:5] == [
            "_URI",
            "_CREATOR_URI_USER",
            "_CREATION_DATE",
            "_LAST_UPDATE_URI_USER",
            "_LAST_UPDATE_DATE",
        ]
        assert names[-1] == "NAME"
        assert relation.primary_key.name == "_URI"

    def test_failed_assert_is_not_cached(self):
        store = CountingDatastore(failures=[RuntimeError("schema conflict")])
        registry = RelationRegistry(store, DAEMON_PRINCIPAL)

        with pytest.raises(RelationAssertionError):
            registry.get_or_create(WIDGETS)
        assert registry.cached_count() == 0

        relation = registry.get_or_create(WIDGETS)
        assert relation is not None
        assert store.assert_calls == 2

    def test_quota_error_propagates_unchanged(self):
        store = CountingDatastore(failures=[QuotaExceeded("no room")])
        registry = RelationRegistry(store, DAEMON_PRINCIPAL)

        with pytest.raises(QuotaExceeded):
            registry.get_or_create(WIDGETS)
        assert registry.cached_count() == 0

    def test_assertion_error_is_a_persistence_failure(self):
        store = CountingDatastore(failures=[RuntimeError("boom")])
        registry = RelationRegistry(store, DAEMON_PRINCIPAL)

        with pytest.raises(PersistenceFailure):
            registry.get_or_create(WIDGETS)

    def test_concurrent_first_use_asserts_once(self):
        store = CountingDatastore()
        store.gate.clear()
        registry = RelationRegistry(store, DAEMON_PRINCIPAL)
        results = []

        def worker():
            results.append(registry.get_or_create(WIDGETS))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        store.gate.set()
        for thread in threads:
            thread.join(timeout=5)

        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert store.assert_calls == 1


class TestRelationDef:
    def test_duplicate_field_names_rejected(self):
        with pytest.raises(ValueError):
            RelationDef("_bad", (NAME, NAME))

    def test_common_field_collision_rejected(self):
        with pytest.raises(ValueError):
            RelationDef("_bad", (DataField("_URI", DataType.STRING),))

    def test_invalid_table_name_rejected(self):
        with pytest.raises(ValueError):
            RelationDef("bad-name; drop", (NAME,))
