from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import db
from core.local_store import LocalStore
from core.records import Collection


def _configure_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "store.db"
    if db_path.exists():
        db_path.unlink()
    db.set_database_path(db_path)
    return db_path


class _BrokenKV:
    def read_value(self, key):
        raise db.StorageError("disk unavailable")

    def write_value(self, key, value):
        raise db.StorageError("disk full")

    def delete_value(self, key):
        raise db.StorageError("disk full")


def test_put_appends_and_upserts_in_place(tmp_path):
    _configure_db(tmp_path)
    store = LocalStore()

    store.put(Collection.PRODUCTS, {"id": "P1", "Name": "Vase", "Stock": 5})
    store.put(Collection.PRODUCTS, {"id": "P2", "Name": "Bowl", "Stock": 2})
    store.put("Products", {"id": "P1", "Name": "Vase", "Stock": 3})

    records = store.get(Collection.PRODUCTS)
    assert [record["id"] for record in records] == ["P1", "P2"]
    assert records[0]["Stock"] == 3


def test_mutations_survive_a_new_store_instance(tmp_path):
    _configure_db(tmp_path)
    LocalStore().put(Collection.SALES, {"id": "S1", "Total": 40})

    reopened = LocalStore()
    assert reopened.get(Collection.SALES) == [{"id": "S1", "Total": 40}]
    assert reopened.find(Collection.SALES, "S1") == {"id": "S1", "Total": 40}
    assert reopened.get(Collection.EXPENSES) == []


def test_remove_reports_whether_anything_changed(tmp_path):
    _configure_db(tmp_path)
    store = LocalStore()
    store.put(Collection.CUSTOMERS, {"id": "C1"})
    store.put(Collection.CUSTOMERS, {"id": "C2"})

    assert store.remove(Collection.CUSTOMERS, "C1") is True
    assert store.remove(Collection.CUSTOMERS, "missing") is False
    assert store.get(Collection.CUSTOMERS) == [{"id": "C2"}]


def test_replace_drops_duplicate_ids(tmp_path):
    _configure_db(tmp_path)
    store = LocalStore()
    store.put(Collection.PRODUCTS, {"id": "old"})

    store.replace(Collection.PRODUCTS, [{"id": "A", "v": 1}, {"id": "B"}, {"id": "A", "v": 2}])

    assert store.get(Collection.PRODUCTS) == [{"id": "A", "v": 1}, {"id": "B"}]


@pytest.mark.parametrize("payload", ["{not json", '{"id": "P1"}', "42"])
def test_corrupt_entries_read_as_empty(tmp_path, payload):
    _configure_db(tmp_path)
    db.write_value("Products", payload)

    assert LocalStore().get(Collection.PRODUCTS) == []


def test_non_object_rows_are_ignored(tmp_path):
    _configure_db(tmp_path)
    db.write_value("Sales", '[{"id": "S1"}, "junk", 7]')

    assert LocalStore().get(Collection.SALES) == [{"id": "S1"}]


def test_unreadable_storage_degrades_but_writes_raise():
    store = LocalStore(kv=_BrokenKV())

    assert store.get(Collection.PRODUCTS) == []
    with pytest.raises(db.StorageError):
        store.put(Collection.PRODUCTS, {"id": "P1"})


def test_put_requires_an_id(tmp_path):
    _configure_db(tmp_path)
    with pytest.raises(ValueError):
        LocalStore().put(Collection.PRODUCTS, {"Name": "nameless"})


def test_unknown_collection_is_rejected(tmp_path):
    _configure_db(tmp_path)
    with pytest.raises(ValueError):
        LocalStore().get("Invoices")


def test_kv_keys_and_delete(tmp_path):
    _configure_db(tmp_path)
    db.write_value("b", "1")
    db.write_value("a", "2")
    db.write_value("a", "3")

    assert db.list_keys() == ["a", "b"]
    assert db.read_value("a") == "3"
    db.delete_value("a")
    assert db.read_value("a") is None


class _ReadFailingKV:
    def __init__(self) -> None:
        self.values = {}
        self.failures = 0

    def read_value(self, key):
        if self.failures:
            self.failures -= 1
            raise db.StorageError("database is locked")
        return self.values.get(key)

    def write_value(self, key, value):
        self.values[key] = value

    def delete_value(self, key):
        self.values.pop(key, None)


def test_read_failure_during_put_keeps_collection():
    kv = _ReadFailingKV()
    store = LocalStore(kv=kv)
    store.put(Collection.PRODUCTS, {"id": "A"})
    store.put(Collection.PRODUCTS, {"id": "B"})

    kv.failures = 1
    with pytest.raises(db.StorageError):
        store.put(Collection.PRODUCTS, {"id": "C"})

    assert [record["id"] for record in store.get(Collection.PRODUCTS)] == ["A", "B"]


def test_read_failure_during_remove_keeps_collection():
    kv = _ReadFailingKV()
    store = LocalStore(kv=kv)
    store.put(Collection.SALES, {"id": "S1"})
    store.put(Collection.SALES, {"id": "S2"})

    kv.failures = 1
    with pytest.raises(db.StorageError):
        store.remove(Collection.SALES, "S1")

    assert store.get(Collection.SALES) == [{"id": "S1"}, {"id": "S2"}]
    kv.failures = 1
    assert store.get(Collection.SALES) == []
    kv.failures = 1
    with pytest.raises(db.StorageError):
        store.get(Collection.SALES, strict=True)
