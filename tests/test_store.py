"""
Tests for the operation store backends.
"""

from datetime import timedelta

import pytest

from optracker.errors import AlreadyExists, NotFound
from optracker.models.operation import (
    ErrorStatus,
    OperationFilter,
    OperationRecord,
    OperationState,
    Payload,
    utcnow,
)
from optracker.services.database import SqliteOperationStore
from optracker.services.store import InMemoryOperationStore, create_operation_store
from optracker.config import Settings


BASE_TIME = utcnow().replace(microsecond=0)


def make_record(op_id: str, offset_seconds: int = 0, **fields) -> OperationRecord:
    created = BASE_TIME + timedelta(seconds=offset_seconds)
    return OperationRecord(id=op_id, created_at=created, updated_at=created, **fields)


def succeeded(record: OperationRecord, value) -> OperationRecord:
    fields = dict(record)
    fields.update(state=OperationState.SUCCEEDED, result=Payload(value=value), version=record.version + 1)
    return OperationRecord(**fields)


class TestBasicOperations:

    def test_put_and_get_roundtrip(self, store):
        record = make_record(
            "op-1",
            kind="batch.predict",
            metadata=Payload(type_url="type.example/Progress", value={"done": 3, "total": 10}),
        )
        store.put(record)

        loaded = store.get("op-1")
        assert loaded == record
        assert loaded.metadata.type_url == "type.example/Progress"
        assert loaded.state == OperationState.RUNNING

    def test_put_rejects_reused_id(self, store):
        store.put(make_record("op-1"))
        with pytest.raises(AlreadyExists):
            store.put(make_record("op-1"))

    def test_get_unknown_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.get("missing")

    def test_delete(self, store):
        store.put(make_record("op-1"))
        store.delete("op-1")
        with pytest.raises(NotFound):
            store.get("op-1")

    def test_delete_unknown_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.delete("missing")

    def test_returned_records_are_copies(self, store):
        store.put(make_record("op-1", metadata=Payload(value={"progress": 0})))
        loaded = store.get("op-1")
        loaded.history.append({"tampered": True})
        assert store.get("op-1").history == []


class TestCompareAndSwap:

    def test_swap_when_state_matches(self, store):
        record = make_record("op-1")
        store.put(record)

        assert store.compare_and_swap("op-1", OperationState.RUNNING, succeeded(record, {"uri": "gs://x"}))
        loaded = store.get("op-1")
        assert loaded.state == OperationState.SUCCEEDED
        assert loaded.result.value == {"uri": "gs://x"}

    def test_swap_fails_when_state_differs(self, store):
        record = make_record("op-1")
        store.put(record)
        store.compare_and_swap("op-1", OperationState.RUNNING, succeeded(record, "first"))

        assert not store.compare_and_swap("op-1", OperationState.RUNNING, succeeded(record, "second"))
        assert store.get("op-1").result.value == "first"

    def test_swap_checks_version(self, store):
        record = make_record("op-1")
        store.put(record)

        assert not store.compare_and_swap(
            "op-1", OperationState.RUNNING, succeeded(record, "x"), expected_version=7
        )
        assert store.compare_and_swap(
            "op-1", OperationState.RUNNING, succeeded(record, "x"), expected_version=1
        )

    def test_swap_unknown_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.compare_and_swap("missing", OperationState.RUNNING, make_record("missing"))


class TestListing:

    def test_list_is_ordered_and_filtered(self, store):
        store.put(make_record("op-b", 1, kind="deploy"))
        store.put(make_record("op-a", 1, kind="export"))
        first = make_record("op-c", 0, kind="deploy")
        store.put(first)
        store.compare_and_swap("op-c", OperationState.RUNNING, succeeded(first, 1))

        assert [r.id for r in store.list()] == ["op-c", "op-a", "op-b"]
        assert [r.id for r in store.list(OperationFilter(kind="deploy"))] == ["op-c", "op-b"]
        assert [r.id for r in store.list(OperationFilter(done=True))] == ["op-c"]
        assert [r.id for r in store.list(OperationFilter(state=OperationState.RUNNING))] == ["op-a", "op-b"]

    def test_list_after_cursor_and_limit(self, store):
        for i in range(5):
            store.put(make_record(f"op-{i}", i))

        page = store.list(limit=2)
        assert [r.id for r in page] == ["op-0", "op-1"]
        rest = store.list(after=page[-1].sort_key())
        assert [r.id for r in rest] == ["op-2", "op-3", "op-4"]


class TestRetention:

    def test_purge_only_old_terminal_records(self, store):
        old_running = make_record("op-running", -7200)
        store.put(old_running)

        old_done = make_record("op-old", -7200)
        store.put(old_done)
        store.compare_and_swap("op-old", OperationState.RUNNING, succeeded(old_done, 1))

        fresh = make_record("op-fresh")
        store.put(fresh)
        fields = dict(fresh)
        fields.update(state=OperationState.FAILED, error=ErrorStatus(code=13, message="boom"))
        store.compare_and_swap("op-fresh", OperationState.RUNNING, OperationRecord(**fields))

        purged = store.purge_terminal(utcnow() - timedelta(hours=1))

        assert purged == 1
        assert {r.id for r in store.list()} == {"op-running", "op-fresh"}


class TestFactory:

    def test_default_is_memory(self):
        assert isinstance(create_operation_store(), InMemoryOperationStore)

    def test_sqlite_backend(self, tmp_path):
        settings = Settings().copy(store_backend="sqlite", database_path=str(tmp_path / "ops.db"))
        store = create_operation_store(settings)
        try:
            assert isinstance(store, SqliteOperationStore)
        finally:
            store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_operation_store(Settings().copy(store_backend="etcd"))


def test_sqlite_store_survives_reopen(tmp_path):
    path = str(tmp_path / "ops.db")
    store = SqliteOperationStore(path)
    store.put(make_record("op-1", metadata=Payload(value={"step": 1})))
    store.close()

    reopened = SqliteOperationStore(path)
    try:
        assert reopened.get("op-1").metadata.value == {"step": 1}
    finally:
        reopened.close()
