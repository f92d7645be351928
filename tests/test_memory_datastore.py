import pytest

from formvault.storage.datastore import DAEMON_PRINCIPAL, Direction, FilterOperation, Principal
from formvault.storage.errors import (
    ConstraintViolation,
    EntityNotFound,
    FieldOverflow,
    PersistenceFailure,
    QuotaExceeded,
    RelationAssertionError,
)
from formvault.storage.fields import DataField, DataType
from formvault.storage.memory import MemoryDatastore
from formvault.storage.relation import Relation, RelationDef, RelationRegistry

COLOR = DataField("COLOR", DataType.STRING, max_length=10)
SIZE = DataField("SIZE", DataType.STRING, max_length=10)
ACTIVE = DataField("ACTIVE", DataType.BOOLEAN, nullable=False, default=True)
THINGS = RelationDef("_things", (COLOR, SIZE, ACTIVE))


def _put(store, relation, color, size="m", principal=DAEMON_PRINCIPAL):
    row = store.create_entity(relation, principal)
    row.set_string_field(COLOR, color)
    row.set_string_field(SIZE, size)
    store.put_entity(row, principal)
    return row


def test_put_stamps_creation_and_update_fields(registry, datastore):
    relation = registry.get_or_create(THINGS)
    alice = Principal("uid:alice|2024-01-01T00:00:00+00:00")
    row = _put(datastore, relation, "red", principal=alice)

    assert row.uri.startswith("uuid:")
    assert row.creator_uri_user == alice.uri
    assert row.creation_date is not None
    assert row.last_update_date == row.creation_date

    created = row.creation_date
    row.set_string_field(SIZE, "l")
    datastore.put_entity(row, DAEMON_PRINCIPAL)

    stored = datastore.get_entity(relation, row.uri, DAEMON_PRINCIPAL)
    assert stored.creation_date == created
    assert stored.creator_uri_user == alice.uri
    assert stored.last_update_uri_user == DAEMON_PRINCIPAL.uri
    assert stored.last_update_date > created


def test_last_update_stamps_strictly_increase(registry, datastore):
    relation = registry.get_or_create(THINGS)
    rows = [_put(datastore, relation, "red") for _ in range(20)]
    stamps = [row.last_update_date for row in rows]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_query_filters_and_sorts(registry, datastore):
    relation = registry.get_or_create(THINGS)
    _put(datastore, relation, "red", "s")
    _put(datastore, relation, "blue", "l")
    newest_red = _put(datastore, relation, "red", "m")

    query = datastore.create_query(relation, "test", DAEMON_PRINCIPAL)
    query.add_filter(COLOR, FilterOperation.EQUAL, "red")
    query.add_sort(relation.last_update_date, Direction.DESCENDING)
    rows = query.execute()

    assert [r.get_field(SIZE) for r in rows] == ["m", "s"]
    assert rows[0].uri == newest_red.uri


def test_multi_key_sort_is_stable(registry, datastore):
    relation = registry.get_or_create(THINGS)
    _put(datastore, relation, "b", "1")
    _put(datastore, relation, "a", "1")
    _put(datastore, relation, "b", "2")

    query = datastore.create_query(relation, "test", DAEMON_PRINCIPAL)
    query.add_sort(COLOR, Direction.ASCENDING)
    query.add_sort(relation.last_update_date, Direction.DESCENDING)
    rows = query.execute()

    assert [(r.get_field(COLOR), r.get_field(SIZE)) for r in rows] == [
        ("a", "1"),
        ("b", "2"),
        ("b", "1"),
    ]


def test_query_results_are_detached_copies(registry, datastore):
    relation = registry.get_or_create(THINGS)
    row = _put(datastore, relation, "red")
    row.set_string_field(COLOR, "green")

    stored = datastore.get_entity(relation, row.uri, DAEMON_PRINCIPAL)
    assert stored.get_field(COLOR) == "red"


def test_string_overflow_raises_field_overflow(registry, datastore):
    relation = registry.get_or_create(THINGS)
    row = datastore.create_entity(relation, DAEMON_PRINCIPAL)
    with pytest.raises(FieldOverflow) as excinfo:
        row.set_string_field(COLOR, "x" * 11)
    assert excinfo.value.detail["max_length"] == 10
    assert row.get_field(COLOR) is None


def test_byte_bounded_field_counts_encoded_size(datastore):
    notes = DataField("NOTES", DataType.STRING, max_bytes=4)
    relation = RelationRegistry(datastore, DAEMON_PRINCIPAL).get_or_create(
        RelationDef("_notes", (notes,))
    )
    row = datastore.create_entity(relation, DAEMON_PRINCIPAL)
    row.set_string_field(notes, "éé")
    with pytest.raises(FieldOverflow) as excinfo:
        row.set_string_field(notes, "ééé")
    assert excinfo.value.detail["length"] == 6
    assert row.get_field(notes) == "éé"


def test_max_bytes_rejected_on_non_string_field():
    with pytest.raises(ValueError):
        DataField("FLAG", DataType.BOOLEAN, max_bytes=4)


def test_non_nullable_boolean_rejects_none(registry, datastore):
    relation = registry.get_or_create(THINGS)
    row = datastore.create_entity(relation, DAEMON_PRINCIPAL)
    assert row.get_field(ACTIVE) is True
    with pytest.raises(ConstraintViolation):
        row.set_boolean_field(ACTIVE, None)


def test_get_missing_entity_raises(registry, datastore):
    relation = registry.get_or_create(THINGS)
    with pytest.raises(EntityNotFound):
        datastore.get_entity(relation, "uuid:missing", DAEMON_PRINCIPAL)


def test_delete_entities_counts_removed_rows(registry, datastore):
    relation = registry.get_or_create(THINGS)
    first = _put(datastore, relation, "red")
    _put(datastore, relation, "blue")

    assert datastore.delete_entities(relation, [first.uri, "uuid:missing"], DAEMON_PRINCIPAL) == 1
    assert datastore.row_count(relation) == 1


def test_row_quota_raises_quota_exceeded():
    store = MemoryDatastore(max_rows=1)
    registry = RelationRegistry(store, DAEMON_PRINCIPAL)
    relation = registry.get_or_create(THINGS)
    row = _put(store, relation, "red")

    with pytest.raises(QuotaExceeded):
        _put(store, relation, "blue")

    # updating an existing row is still allowed
    row.set_string_field(SIZE, "xl")
    store.put_entity(row, DAEMON_PRINCIPAL)


def test_unasserted_relation_is_a_persistence_failure(datastore):
    relation = Relation(THINGS, "public")
    with pytest.raises(PersistenceFailure):
        datastore.create_query(relation, "test", DAEMON_PRINCIPAL).execute()


def test_relation_layout_mismatch_rejected(datastore):
    datastore.assert_relation(Relation(THINGS, "public"), DAEMON_PRINCIPAL)
    changed = RelationDef("_things", (COLOR,))
    with pytest.raises(RelationAssertionError):
        datastore.assert_relation(Relation(changed, "public"), DAEMON_PRINCIPAL)


def test_state_survives_reload(tmp_path):
    store = MemoryDatastore(fs_root=str(tmp_path))
    relation = RelationRegistry(store, DAEMON_PRINCIPAL).get_or_create(THINGS)
    row = _put(store, relation, "red", "s")

    reloaded = MemoryDatastore(fs_root=str(tmp_path))
    relation = RelationRegistry(reloaded, DAEMON_PRINCIPAL).get_or_create(THINGS)
    stored = reloaded.get_entity(relation, row.uri, DAEMON_PRINCIPAL)

    assert stored.get_field(COLOR) == "red"
    assert stored.last_update_date == row.last_update_date
    assert stored.get_field(ACTIVE) is True

    newer = _put(reloaded, relation, "blue")
    assert newer.last_update_date > row.last_update_date


def _failing_persist():
    raise PersistenceFailure("disk full", {"path": "state/datastore.json"})


def test_null_violation_leaves_row_unstamped(datastore):
    label = DataField("LABEL", DataType.STRING, nullable=False)
    relation = RelationRegistry(datastore, DAEMON_PRINCIPAL).get_or_create(
        RelationDef("_labels", (label,))
    )
    row = datastore.create_entity(relation, DAEMON_PRINCIPAL)

    with pytest.raises(ConstraintViolation):
        datastore.put_entity(row, DAEMON_PRINCIPAL)

    assert row.creation_date is None
    assert row.last_update_date is None
    assert datastore.row_count(relation) == 0


def test_failed_persist_does_not_insert(registry, datastore, monkeypatch):
    relation = registry.get_or_create(THINGS)
    monkeypatch.setattr(datastore, "_persist_state", _failing_persist)
    row = datastore.create_entity(relation, DAEMON_PRINCIPAL)
    row.set_string_field(COLOR, "red")

    with pytest.raises(PersistenceFailure):
        datastore.put_entity(row, DAEMON_PRINCIPAL)

    assert datastore.row_count(relation) == 0
    assert row.creation_date is None
    with pytest.raises(EntityNotFound):
        datastore.get_entity(relation, row.uri, DAEMON_PRINCIPAL)


def test_failed_persist_keeps_previous_version(registry, datastore, monkeypatch):
    relation = registry.get_or_create(THINGS)
    row = _put(datastore, relation, "red")
    stamped = row.last_update_date
    monkeypatch.setattr(datastore, "_persist_state", _failing_persist)

    row.set_string_field(COLOR, "blue")
    with pytest.raises(PersistenceFailure):
        datastore.put_entity(row, DAEMON_PRINCIPAL)

    stored = datastore.get_entity(relation, row.uri, DAEMON_PRINCIPAL)
    assert stored.get_field(COLOR) == "red"
    assert stored.last_update_date == stamped
    assert row.last_update_date == stamped


def test_failed_persist_restores_deleted_rows(registry, datastore, monkeypatch):
    relation = registry.get_or_create(THINGS)
    row = _put(datastore, relation, "red")
    monkeypatch.setattr(datastore, "_persist_state", _failing_persist)

    with pytest.raises(PersistenceFailure):
        datastore.delete_entities(relation, [row.uri], DAEMON_PRINCIPAL)

    assert datastore.get_entity(relation, row.uri, DAEMON_PRINCIPAL).get_field(COLOR) == "red"
