"""Key-value catalog store.

The ledger reads and writes JSON documents by key and never sees the
backend. One backend is chosen explicitly from configuration; a failing
backend raises ``StorageError`` instead of switching to another data source.
"""
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import redis

from .book import Book
from .borrow import LendingSettings
from .config import settings
from .errors import StorageError, ValidationError
from .user import Role, User, hash_password

logger = logging.getLogger(__name__)

BOOK_LIST = "book_list"
USER_LIST = "user_list"
BORROW_LIST = "borrow_list"
SETTINGS_KEY = "settings"
INITIALIZED_KEY = "initialized"


def book_key(book_id: str) -> str:
    return f"book:{book_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def borrow_key(borrow_id: str) -> str:
    return f"borrow:{borrow_id}"


def auth_key(username: str) -> str:
    return f"auth:{username}"


def _encode(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Value is not JSON serializable: {e}") from e


def _decode(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise StorageError(f"Corrupt value in catalog store: {e}") from e


class CatalogStore:
    """get/set/delete by key, prefix listing and atomic multi-key writes."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def delete(self, key: str) -> None:
        self.set_many({}, deletes=[key])

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def set_many(self, values: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        """Apply every write and delete, or none of them."""
        raise NotImplementedError

    def close(self) -> None:
        return None


class MemoryStore(CatalogStore):
    """In-process store for tests and demos. Values are copied through JSON."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Any:
        with self._lock:
            return _decode(self._data.get(key))

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def set_many(self, values: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        # Encode everything first so a bad value leaves the map untouched
        encoded = {k: _encode(v) for k, v in values.items()}
        with self._lock:
            self._data.update(encoded)
            for key in deletes:
                self._data.pop(key, None)


class SqliteStore(CatalogStore):
    """Single-table SQLite store, one connection per operation."""

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file
        self._create_table()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_file, timeout=10)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            return conn
        except sqlite3.Error as e:
            raise StorageError(f"Could not open {self.db_file}: {e}") from e

    def _create_table(self) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Could not create catalog table: {e}") from e
        finally:
            conn.close()

    def get(self, key: str) -> Any:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Read of {key!r} failed: {e}") from e
        finally:
            conn.close()
        return _decode(row[0]) if row else None

    def keys(self, prefix: str = "") -> List[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY rowid",
                (len(prefix), prefix),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Key listing failed: {e}") from e
        finally:
            conn.close()
        return [row[0] for row in rows]

    def set_many(self, values: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        rows = [(k, _encode(v)) for k, v in values.items()]
        conn = self._connect()
        try:
            with conn:
                # Upsert keeps the original rowid so prefix listings stay in insertion order
                conn.executemany(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    rows,
                )
                conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in deletes])
        except sqlite3.Error as e:
            raise StorageError(f"Write failed: {e}") from e
        finally:
            conn.close()


class RedisStore(CatalogStore):
    """Redis-backed store; multi-key writes go through a MULTI/EXEC pipeline."""

    def __init__(self, client: redis.Redis, prefix: str = "") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "", password: Optional[str] = None) -> "RedisStore":
        client = redis.from_url(
            url,
            password=password,
            decode_responses=False,
            socket_connect_timeout=1,
            socket_timeout=1,
            health_check_interval=30,
        )
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Any:
        try:
            return _decode(self._client.get(self._key(key)))
        except redis.RedisError as e:
            raise StorageError(f"Redis read of {key!r} failed: {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        try:
            found = self._client.scan_iter(match=f"{self._key(prefix)}*")
            names = [k.decode("utf-8") if isinstance(k, bytes) else k for k in found]
        except redis.RedisError as e:
            raise StorageError(f"Redis key scan failed: {e}") from e
        return sorted(name[len(self._prefix):] for name in names)

    def set_many(self, values: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        encoded = {self._key(k): _encode(v) for k, v in values.items()}
        try:
            pipe = self._client.pipeline(transaction=True)
            for key, value in encoded.items():
                pipe.set(key, value)
            for key in deletes:
                pipe.delete(self._key(key))
            pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"Redis write failed: {e}") from e

    def close(self) -> None:
        self._client.close()


def get_store(backend: Optional[str] = None) -> CatalogStore:
    """Build the store selected by ``LIBRARY_STORE``."""
    backend = (backend or settings.store_backend).lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return SqliteStore(settings.db_file)
    if backend == "redis":
        return RedisStore.from_url(settings.redis_url, settings.redis_prefix, settings.redis_password)
    raise ValidationError(f"Unknown catalog store backend: {backend!r}")


def initialize_database(store: CatalogStore, seed: Optional[bool] = None) -> bool:
    """Write the default settings, accounts and books once.

    Returns True when seeding ran. Guarded by the ``initialized`` key, so
    calling it on every start is safe.
    """
    if seed is None:
        seed = settings.seed_demo_data
    if store.get(INITIALIZED_KEY):
        return False
    if not seed:
        if store.get(SETTINGS_KEY) is None:
            store.set(SETTINGS_KEY, LendingSettings().to_dict())
        return False

    logger.info("Initializing catalog store with default data")
    now = datetime.now(timezone.utc).isoformat()
    users = [
        User("admin", hash_password("admin123"), Role.ADMIN, "admin@library.com", now),
        User("student", hash_password("student123"), Role.STUDENT, "student@library.com", now),
    ]
    books = [
        Book("To Kill a Mockingbird", "Harper Lee", "978-0-06-112008-4", quantity=5,
             category="Fiction", publisher="J.B. Lippincott & Co.", year=1960,
             description="A lawyer in the Depression-era South defends a black man wrongly accused."),
        Book("1984", "George Orwell", "978-0-452-28423-4", quantity=8,
             category="Science Fiction", publisher="Secker & Warburg", year=1949,
             description="A dystopian novel about the dangers of totalitarianism."),
        Book("The Great Gatsby", "F. Scott Fitzgerald", "978-0-7432-7356-5", quantity=6,
             category="Fiction", publisher="Charles Scribner's Sons", year=1925,
             description="A novel about the American Dream in the Roaring Twenties."),
    ]

    values: Dict[str, Any] = {}
    for user in users:
        values[user_key(user.id)] = user.to_dict()
        values[auth_key(user.username)] = user.id
    for book in books:
        values[book_key(book.id)] = book.to_dict()
    values[USER_LIST] = [u.id for u in users]
    values[BOOK_LIST] = [b.id for b in books]
    values[BORROW_LIST] = []
    values[SETTINGS_KEY] = LendingSettings().to_dict()
    values[INITIALIZED_KEY] = True
    store.set_many(values)
    logger.info("Seeded %d users and %d books", len(users), len(books))
    return True
