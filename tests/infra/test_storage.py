from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from place_harvester.config import StorageBackend, StorageConfig
from place_harvester.errors import ConfigurationError, DuplicateDocumentError, PersistenceError
from place_harvester.infra import MongoDocumentStore, SQLiteDocumentStore, open_document_store
from place_harvester.infra.storage import MongoCollection


def test_sqlite_insert_find_and_duplicate(document_store: SQLiteDocumentStore) -> None:
    places = document_store.place_results
    places.insert({"place_id": "p1", "title": "One", "search_query_id": "fp-a"})
    places.insert({"place_id": "p2", "title": "Two", "search_query_id": "fp-b"})

    assert places.find_one({"place_id": "p1"})["title"] == "One"
    assert places.find_one({"search_query_id": "fp-b"})["place_id"] == "p2"
    assert places.find_one({"place_id": "missing"}) is None
    with pytest.raises(DuplicateDocumentError):
        places.insert({"place_id": "p1", "title": "Again"})
    assert places.count() == 2
    assert places.count({"search_query_id": "fp-a"}) == 1


def test_sqlite_upsert_sets_fields_and_insert_only_values(document_store: SQLiteDocumentStore) -> None:
    history = document_store.query_history
    created = history.upsert({"fingerprint": "fp"}, {"status": "in_progress"}, on_insert={"created_at": "t0"})
    assert created == {"fingerprint": "fp", "created_at": "t0", "status": "in_progress"}

    updated = history.upsert({"fingerprint": "fp"}, {"status": "completed"}, on_insert={"created_at": "t1"})
    assert updated["created_at"] == "t0"
    assert updated["status"] == "completed"
    assert history.count() == 1


def test_sqlite_update_matches_filter_only(document_store: SQLiteDocumentStore) -> None:
    leases = document_store.query_leases
    leases.insert({"fingerprint": "fp", "owner": "a", "expires_at": 10.5})
    assert not leases.update({"fingerprint": "fp", "owner": "b"}, {"owner": "c"})
    assert leases.update({"fingerprint": "fp", "owner": "a", "expires_at": 10.5}, {"owner": "c"})
    assert leases.find_one({"fingerprint": "fp"})["owner"] == "c"
    assert not leases.update({"fingerprint": "other"}, {"owner": "c"})


def test_sqlite_find_sort_limit_and_delete(document_store: SQLiteDocumentStore) -> None:
    history = document_store.query_history
    for name, stamp in (("a", "2024-01"), ("b", "2024-03"), ("c", "2024-02")):
        history.insert({"fingerprint": name, "created_at": stamp})
    ordered = history.find(sort="created_at", descending=True, limit=2)
    assert [doc["fingerprint"] for doc in ordered] == ["b", "c"]
    assert history.delete({"fingerprint": "b"}) == 1
    assert history.delete({"fingerprint": "b"}) == 0
    assert history.count() == 2


def test_sqlite_rejects_unsafe_field_names(document_store: SQLiteDocumentStore) -> None:
    with pytest.raises(PersistenceError):
        document_store.query_history.find({"status'; DROP": "x"})
    with pytest.raises(PersistenceError):
        document_store.query_history.insert({"status": "no key"})


def test_sqlite_store_reopens_after_close(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "store.db"
    with SQLiteDocumentStore(path) as store:
        store.place_results.insert({"place_id": "p1"})
    assert path.exists()
    with SQLiteDocumentStore(path) as store:
        assert store.place_results.count() == 1


def test_unknown_collection_is_rejected(document_store: SQLiteDocumentStore) -> None:
    with pytest.raises(PersistenceError):
        document_store.collection("sessions")


def test_mongo_collection_translates_contract() -> None:
    raw = MagicMock()
    raw.name = "query_history"
    raw.find_one_and_update.return_value = {"fingerprint": "fp", "status": "completed"}
    raw.update_one.return_value.matched_count = 0
    raw.delete_many.return_value.deleted_count = 3
    raw.count_documents.return_value = 5
    collection = MongoCollection(raw, "fingerprint")

    doc = collection.upsert({"fingerprint": "fp"}, {"status": "completed"}, on_insert={"created_at": "t0", "status": "x"})
    assert doc["status"] == "completed"
    args, kwargs = raw.find_one_and_update.call_args
    assert args[0] == {"fingerprint": "fp"}
    assert args[1] == {"$set": {"status": "completed"}, "$setOnInsert": {"created_at": "t0"}}
    assert kwargs["upsert"] is True
    assert kwargs["projection"] == {"_id": False}

    assert collection.update({"fingerprint": "fp"}, {"status": "failed"}) is False
    raw.update_one.assert_called_once_with({"fingerprint": "fp"}, {"$set": {"status": "failed"}})
    assert collection.delete({"status": "failed"}) == 3
    assert collection.count({"status": "completed"}) == 5


def test_mongo_collection_maps_driver_errors() -> None:
    raw = MagicMock()
    raw.name = "place_results"
    raw.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    raw.count_documents.side_effect = ServerSelectionTimeoutError("no servers")
    collection = MongoCollection(raw, "place_id")

    with pytest.raises(DuplicateDocumentError):
        collection.insert({"place_id": "p1"})
    with pytest.raises(PersistenceError):
        collection.count()


def test_mongo_store_connects_lazily_and_creates_indexes() -> None:
    client = MagicMock()
    factory = MagicMock(return_value=client)
    store = MongoDocumentStore("mongodb://localhost:27017", "places", client_factory=factory)
    factory.assert_not_called()

    store.place_results
    factory.assert_called_once()
    database = client.__getitem__.return_value
    collection = database.__getitem__.return_value
    client.__getitem__.assert_called_with("places")
    collection.create_index.assert_any_call("place_id", unique=True)
    collection.create_index.assert_any_call("search_query_id")

    store.close()
    client.close.assert_called_once()


def test_open_document_store_selects_backend(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sqlite_store = open_document_store(StorageConfig(), tmp_path)
    assert isinstance(sqlite_store, SQLiteDocumentStore)
    assert sqlite_store.path == (tmp_path / "data" / "harvester.db").resolve()

    with pytest.raises(ConfigurationError):
        open_document_store(StorageConfig(backend=StorageBackend.MONGODB), tmp_path)

    monkeypatch.setenv("MONGODB_URI", "mongodb://db:27017")
    mongo_store = open_document_store(StorageConfig(backend=StorageBackend.MONGODB), tmp_path)
    assert isinstance(mongo_store, MongoDocumentStore)
    assert mongo_store.uri == "mongodb://db:27017"
