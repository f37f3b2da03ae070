import sqlite3
from unittest.mock import MagicMock

import pytest
import redis

from lending_desk.database import (
    BOOK_LIST,
    INITIALIZED_KEY,
    MemoryStore,
    RedisStore,
    SqliteStore,
    get_store,
    initialize_database,
)
from lending_desk.errors import StorageError, ValidationError
from lending_desk.library import Library


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SqliteStore(str(tmp_path / "kv.db"))


def test_get_set_delete(store):
    assert store.get("book:1") is None
    store.set("book:1", {"id": "1", "title": "Dune"})
    assert store.get("book:1") == {"id": "1", "title": "Dune"}
    store.delete("book:1")
    assert store.get("book:1") is None

def test_keys_by_prefix_in_insertion_order(store):
    store.set("book:b", 1)
    store.set("user:x", 2)
    store.set("book:a", 3)
    store.set("book:b", 4)
    assert store.keys("book:") == ["book:b", "book:a"]
    assert store.keys("nothing:") == []

def test_set_many_writes_and_deletes_together(store):
    store.set("auth:old", "u1")
    store.set_many({"auth:new": "u1", "user:u1": {"username": "new"}}, deletes=["auth:old"])
    assert store.get("auth:old") is None
    assert store.get("auth:new") == "u1"

def test_unserializable_value_writes_nothing(store):
    with pytest.raises(StorageError):
        store.set_many({"a": 1, "b": object()})
    assert store.get("a") is None

def test_returned_values_are_copies(store):
    store.set(BOOK_LIST, ["1"])
    ids = store.get(BOOK_LIST)
    ids.append("2")
    assert store.get(BOOK_LIST) == ["1"]

def test_corrupt_sqlite_value_raises_storage_error(tmp_path):
    db_file = str(tmp_path / "kv.db")
    store = SqliteStore(db_file)
    conn = sqlite3.connect(db_file)
    conn.execute("INSERT INTO kv (key, value) VALUES ('book:1', '{not json')")
    conn.commit()
    conn.close()
    with pytest.raises(StorageError):
        store.get("book:1")

def test_unreachable_sqlite_file_raises_storage_error(tmp_path):
    with pytest.raises(StorageError):
        SqliteStore(str(tmp_path / "missing-dir" / "kv.db"))


# ------------------------- Redis ------------------------- #
def test_redis_set_many_uses_one_transaction():
    client = MagicMock()
    pipe = client.pipeline.return_value
    store = RedisStore(client, prefix="t:")

    store.set_many({"book:1": {"id": "1"}}, deletes=["auth:x"])

    client.pipeline.assert_called_once_with(transaction=True)
    pipe.set.assert_called_once_with("t:book:1", '{"id": "1"}')
    pipe.delete.assert_called_once_with("t:auth:x")
    pipe.execute.assert_called_once()

def test_redis_get_decodes_json_bytes():
    client = MagicMock()
    client.get.return_value = b'{"a": 1}'
    store = RedisStore(client, prefix="t:")
    assert store.get("k") == {"a": 1}
    client.get.assert_called_once_with("t:k")

def test_redis_keys_strip_namespace():
    client = MagicMock()
    client.scan_iter.return_value = [b"t:book:2", b"t:book:1"]
    store = RedisStore(client, prefix="t:")
    assert store.keys("book:") == ["book:1", "book:2"]
    client.scan_iter.assert_called_once_with(match="t:book:*")

def test_redis_errors_become_storage_errors():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("connection refused")
    client.pipeline.return_value.execute.side_effect = redis.ConnectionError("connection refused")
    store = RedisStore(client)
    with pytest.raises(StorageError):
        store.get("book:1")
    with pytest.raises(StorageError):
        store.set("book:1", {})


# ------------------------- Selection & seeding ------------------------- #
def test_get_store_is_explicit():
    assert isinstance(get_store("memory"), MemoryStore)
    with pytest.raises(ValidationError):
        get_store("carrier-pigeon")

def test_seed_runs_once():
    store = MemoryStore()
    assert initialize_database(store, seed=True) is True
    assert initialize_database(store, seed=True) is False
    assert store.get(INITIALIZED_KEY) is True

    lib = Library(store=store)
    assert len(lib.list_books()) == 3
    assert {u.username for u in lib.list_users()} == {"admin", "student"}
    assert lib.authenticate("admin", "admin123").role.value == "Admin"
    assert all(b.available == b.quantity for b in lib.list_books())

def test_without_seed_only_settings_are_written():
    store = MemoryStore()
    assert initialize_database(store, seed=False) is False
    assert store.keys("book:") == []
    assert store.get("settings")["borrowingPeriodDays"] == 14
