"""Shared fixtures: isolated home directory, SQLite store, fake search API."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import pytest

from place_harvester.config import BatchConfig, ConfigLocator, ConfigRepository
from place_harvester.engine import PlacePersistence, PlaceRecord, ProgressStore
from place_harvester.infra import SQLiteDocumentStore
from place_harvester.orchestrator import BatchOrchestrator


class FakeSearch:
    """Search callable returning canned results per query string."""

    def __init__(
        self,
        results: Mapping[str, list[PlaceRecord]] | None = None,
        failures: Mapping[str, Exception] | None = None,
        on_call: Callable[[str], None] | None = None,
    ) -> None:
        self.results = dict(results or {})
        self.failures = dict(failures or {})
        self.on_call = on_call
        self.calls: list[str] = []

    def __call__(self, query: str) -> list[PlaceRecord]:
        self.calls.append(query)
        if self.on_call is not None:
            self.on_call(query)
        if query in self.failures:
            raise self.failures[query]
        return list(self.results.get(query, []))


@pytest.fixture(autouse=True)
def harvester_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("PLACE_HARVESTER_HOME", str(tmp_path))
    monkeypatch.delenv("SERP_API_KEY", raising=False)
    monkeypatch.delenv("MONGODB_URI", raising=False)
    return tmp_path


@pytest.fixture
def temp_config_repository(tmp_path: Path) -> ConfigRepository:
    return ConfigRepository(ConfigLocator(project_root=tmp_path))


@pytest.fixture
def document_store(tmp_path: Path) -> Iterable[SQLiteDocumentStore]:
    store = SQLiteDocumentStore(tmp_path / "data" / "harvester.db")
    yield store
    store.close()


@pytest.fixture
def progress_store(document_store: SQLiteDocumentStore) -> ProgressStore:
    return ProgressStore(document_store)


@pytest.fixture
def persistence(document_store: SQLiteDocumentStore) -> PlacePersistence:
    return PlacePersistence(document_store)


@pytest.fixture
def make_place() -> Callable[..., PlaceRecord]:
    def _builder(place_id: str, **fields: Any) -> PlaceRecord:
        base: dict[str, Any] = {
            "place_id": place_id,
            "title": f"Place {place_id}",
            "address": "1 Main St, Oakland, CA 94607",
        }
        base.update(fields)
        return PlaceRecord(**base)

    return _builder


@pytest.fixture
def fake_search() -> Callable[..., FakeSearch]:
    return FakeSearch


@pytest.fixture
def orchestrator_factory(
    progress_store: ProgressStore, persistence: PlacePersistence
) -> Callable[..., BatchOrchestrator]:
    def _builder(search: Callable[[str], list[PlaceRecord]], **batch_overrides: Any) -> BatchOrchestrator:
        options: dict[str, Any] = {"inter_target_delay": 0.0}
        options.update(batch_overrides)
        return BatchOrchestrator(progress_store, persistence, search, BatchConfig(**options))

    return _builder
