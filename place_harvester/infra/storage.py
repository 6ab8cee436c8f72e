"""Document store abstractions over SQLite and MongoDB.

Both backends expose the same small collection contract used by the progress
store and the place persistence layer: equality filters, unique-key inserts,
field-level upserts and counts. Each collection has one unique key field.
"""

from __future__ import annotations

import json
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, Mapping

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..config import StorageBackend, StorageConfig
from ..errors import ConfigurationError, DuplicateDocumentError, PersistenceError

QUERY_HISTORY = "query_history"
PLACE_RESULTS = "place_results"
QUERY_LEASES = "query_leases"

KEY_FIELDS: Dict[str, str] = {
    QUERY_HISTORY: "fingerprint",
    PLACE_RESULTS: "place_id",
    QUERY_LEASES: "fingerprint",
}

SECONDARY_INDEXES: Dict[str, tuple[str, ...]] = {
    QUERY_HISTORY: ("status", "created_at"),
    PLACE_RESULTS: ("search_query_id",),
    QUERY_LEASES: (),
}

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DocumentCollection(ABC):
    """Minimal document collection contract keyed on a single unique field."""

    def __init__(self, name: str, key_field: str) -> None:
        self.name = name
        self.key_field = key_field

    @abstractmethod
    def find_one(self, filter: Mapping[str, Any]) -> dict | None:
        """Return the first document matching all equality conditions."""

    @abstractmethod
    def find(
        self,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        """Return matching documents, optionally sorted on one field."""

    @abstractmethod
    def insert(self, document: Mapping[str, Any]) -> None:
        """Insert a new document; raise DuplicateDocumentError on key clash."""

    @abstractmethod
    def upsert(
        self,
        key: Mapping[str, Any],
        fields: Mapping[str, Any],
        on_insert: Mapping[str, Any] | None = None,
    ) -> dict:
        """Set ``fields`` on the keyed document, creating it when missing."""

    @abstractmethod
    def update(self, filter: Mapping[str, Any], fields: Mapping[str, Any]) -> bool:
        """Set ``fields`` on the first match; never creates. Returns matched."""

    @abstractmethod
    def delete(self, filter: Mapping[str, Any]) -> int:
        """Delete all matches and return how many were removed."""

    @abstractmethod
    def count(self, filter: Mapping[str, Any] | None = None) -> int:
        """Count matching documents."""


# ----------------------------------------------------------------------
# SQLite backend
# ----------------------------------------------------------------------
class SQLiteCollection(DocumentCollection):
    """JSON documents stored in a two-column SQLite table."""

    def __init__(self, conn: sqlite3.Connection, lock: RLock, name: str, key_field: str) -> None:
        super().__init__(name, key_field)
        self._conn = conn
        self._lock = lock

    def find_one(self, filter: Mapping[str, Any]) -> dict | None:
        rows = self.find(filter, limit=1)
        return rows[0] if rows else None

    def find(
        self,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        where, params = self._where(filter or {})
        sql = f"SELECT payload FROM {self.name}{where}"
        if sort:
            sql += f" ORDER BY {self._field_expr(sort)} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._guard():
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        return [json.loads(row[0]) for row in rows]

    def insert(self, document: Mapping[str, Any]) -> None:
        doc = dict(document)
        key = self._key_of(doc)
        with self._guard():
            with self._lock:
                self._conn.execute(
                    f"INSERT INTO {self.name}(key, payload) VALUES (?, ?)",
                    (key, _encode(doc)),
                )

    def upsert(
        self,
        key: Mapping[str, Any],
        fields: Mapping[str, Any],
        on_insert: Mapping[str, Any] | None = None,
    ) -> dict:
        key_value = self._key_of(key)
        with self._guard(), self._transaction():
            row = self._conn.execute(
                f"SELECT payload FROM {self.name} WHERE key = ?", (key_value,)
            ).fetchone()
            if row is not None:
                doc = json.loads(row[0])
                doc.update(fields)
                self._conn.execute(
                    f"UPDATE {self.name} SET payload = ? WHERE key = ?",
                    (_encode(doc), key_value),
                )
            else:
                doc = {**dict(key), **dict(on_insert or {}), **dict(fields)}
                self._conn.execute(
                    f"INSERT INTO {self.name}(key, payload) VALUES (?, ?)",
                    (key_value, _encode(doc)),
                )
        return doc

    def update(self, filter: Mapping[str, Any], fields: Mapping[str, Any]) -> bool:
        where, params = self._where(filter)
        with self._guard(), self._transaction():
            row = self._conn.execute(
                f"SELECT key, payload FROM {self.name}{where} LIMIT 1", params
            ).fetchone()
            if row is None:
                return False
            doc = json.loads(row[1])
            doc.update(fields)
            self._conn.execute(
                f"UPDATE {self.name} SET payload = ? WHERE key = ?",
                (_encode(doc), row[0]),
            )
        return True

    def delete(self, filter: Mapping[str, Any]) -> int:
        where, params = self._where(filter)
        with self._guard():
            with self._lock:
                cur = self._conn.execute(f"DELETE FROM {self.name}{where}", params)
        return cur.rowcount

    def count(self, filter: Mapping[str, Any] | None = None) -> int:
        where, params = self._where(filter or {})
        with self._guard():
            with self._lock:
                row = self._conn.execute(
                    f"SELECT COUNT(*) FROM {self.name}{where}", params
                ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    def _key_of(self, document: Mapping[str, Any]) -> str:
        value = document.get(self.key_field)
        if value is None or value == "":
            raise PersistenceError(f"{self.name}: document is missing key field '{self.key_field}'")
        return str(value)

    def _field_expr(self, field: str) -> str:
        if not _FIELD_PATTERN.match(field):
            raise PersistenceError(f"{self.name}: unsupported field name {field!r}")
        return f"json_extract(payload, '$.{field}')"

    def _where(self, filter: Mapping[str, Any]) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for field, value in filter.items():
            if field == self.key_field and value is not None:
                clauses.append("key = ?")
                params.append(str(value))
                continue
            if isinstance(value, (dict, list, tuple)):
                raise PersistenceError(f"{self.name}: only scalar equality filters are supported")
            clauses.append(f"{self._field_expr(field)} IS ?")
            params.append(int(value) if isinstance(value, bool) else value)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as exc:
            raise DuplicateDocumentError(f"{self.name}: duplicate key ({exc})") from exc
        except sqlite3.Error as exc:
            raise PersistenceError(f"{self.name}: {exc}") from exc


def _encode(document: Mapping[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, default=str)


# ----------------------------------------------------------------------
# MongoDB backend
# ----------------------------------------------------------------------
class MongoCollection(DocumentCollection):
    """Adapter translating the collection contract onto a pymongo collection."""

    _PROJECTION = {"_id": False}

    def __init__(self, collection: Any, key_field: str) -> None:
        super().__init__(collection.name, key_field)
        self._collection = collection

    def find_one(self, filter: Mapping[str, Any]) -> dict | None:
        with self._guard():
            return self._collection.find_one(dict(filter), projection=self._PROJECTION)

    def find(
        self,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        with self._guard():
            cursor = self._collection.find(dict(filter or {}), projection=self._PROJECTION)
            if sort:
                cursor = cursor.sort(sort, DESCENDING if descending else ASCENDING)
            if limit is not None:
                cursor = cursor.limit(int(limit))
            return list(cursor)

    def insert(self, document: Mapping[str, Any]) -> None:
        # insert_one mutates its argument with an _id
        with self._guard():
            self._collection.insert_one(dict(document))

    def upsert(
        self,
        key: Mapping[str, Any],
        fields: Mapping[str, Any],
        on_insert: Mapping[str, Any] | None = None,
    ) -> dict:
        update: dict[str, Any] = {"$set": dict(fields)}
        insert_only = {k: v for k, v in (on_insert or {}).items() if k not in fields}
        if insert_only:
            update["$setOnInsert"] = insert_only
        with self._guard():
            return self._collection.find_one_and_update(
                dict(key),
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
                projection=self._PROJECTION,
            )

    def update(self, filter: Mapping[str, Any], fields: Mapping[str, Any]) -> bool:
        with self._guard():
            result = self._collection.update_one(dict(filter), {"$set": dict(fields)})
        return result.matched_count > 0

    def delete(self, filter: Mapping[str, Any]) -> int:
        with self._guard():
            return self._collection.delete_many(dict(filter)).deleted_count

    def count(self, filter: Mapping[str, Any] | None = None) -> int:
        with self._guard():
            return self._collection.count_documents(dict(filter or {}))

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as exc:
            raise DuplicateDocumentError(f"{self.name}: duplicate key ({exc})") from exc
        except PyMongoError as exc:
            raise PersistenceError(f"{self.name}: {exc}") from exc


# ----------------------------------------------------------------------
# Store handles
# ----------------------------------------------------------------------
class DocumentStore(ABC):
    """Owned, lazily-initialised connection handle exposing named collections."""

    def __init__(self) -> None:
        self._collections: Dict[str, DocumentCollection] = {}
        self._lock = RLock()

    def collection(self, name: str) -> DocumentCollection:
        if name not in KEY_FIELDS:
            raise PersistenceError(f"Unknown collection: {name}")
        with self._lock:
            if name not in self._collections:
                self._collections[name] = self._open_collection(name, KEY_FIELDS[name])
            return self._collections[name]

    @property
    def query_history(self) -> DocumentCollection:
        return self.collection(QUERY_HISTORY)

    @property
    def place_results(self) -> DocumentCollection:
        return self.collection(PLACE_RESULTS)

    @property
    def query_leases(self) -> DocumentCollection:
        return self.collection(QUERY_LEASES)

    @abstractmethod
    def _open_collection(self, name: str, key_field: str) -> DocumentCollection:
        """Create the backend collection, ensuring schema and indexes."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying connection."""

    def __enter__(self) -> "DocumentStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SQLiteDocumentStore(DocumentStore):
    """Single-file SQLite store; the connection opens on first collection access."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self._conn: sqlite3.Connection | None = None

    def _connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
                    conn.execute("PRAGMA journal_mode=WAL")
                except sqlite3.Error as exc:
                    raise PersistenceError(f"Cannot open SQLite store {self.path}: {exc}") from exc
                self._conn = conn
            return self._conn

    def _open_collection(self, name: str, key_field: str) -> DocumentCollection:
        conn = self._connection()
        with self._lock:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {name} (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL
                )
                """
            )
            for field in SECONDARY_INDEXES.get(name, ()):
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{name}_{field} "
                    f"ON {name}(json_extract(payload, '$.{field}'))"
                )
        return SQLiteCollection(conn, self._lock, name, key_field)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._collections.clear()


class MongoDocumentStore(DocumentStore):
    """MongoDB store; the client connects on first collection access."""

    def __init__(self, uri: str, database: str, client_factory: Any = MongoClient) -> None:
        super().__init__()
        self.uri = uri
        self.database = database
        self._client_factory = client_factory
        self._client: Any = None

    def _db(self) -> Any:
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._client_factory(self.uri, serverSelectionTimeoutMS=5000)
                except PyMongoError as exc:
                    raise PersistenceError(f"Cannot connect to MongoDB: {exc}") from exc
            return self._client[self.database]

    def _open_collection(self, name: str, key_field: str) -> DocumentCollection:
        collection = self._db()[name]
        try:
            collection.create_index(key_field, unique=True)
            for field in SECONDARY_INDEXES.get(name, ()):
                collection.create_index(field)
        except PyMongoError as exc:
            raise PersistenceError(f"Cannot prepare collection {name}: {exc}") from exc
        return MongoCollection(collection, key_field)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
            self._collections.clear()


def open_document_store(config: StorageConfig, base_dir: Path) -> DocumentStore:
    """Build the configured store without connecting yet."""

    if config.backend is StorageBackend.MONGODB:
        uri = config.resolved_mongo_uri()
        if not uri:
            raise ConfigurationError(
                "MongoDB backend selected but no URI configured; set storage.mongo_uri or MONGODB_URI."
            )
        return MongoDocumentStore(uri, config.database)
    return SQLiteDocumentStore(config.resolved_sqlite_path(base_dir))


__all__ = [
    "DocumentCollection",
    "DocumentStore",
    "KEY_FIELDS",
    "MongoCollection",
    "MongoDocumentStore",
    "PLACE_RESULTS",
    "QUERY_HISTORY",
    "QUERY_LEASES",
    "SQLiteCollection",
    "SQLiteDocumentStore",
    "open_document_store",
]
