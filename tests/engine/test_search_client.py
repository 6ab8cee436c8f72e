from __future__ import annotations

from typing import Any

import httpx
import pytest

from place_harvester.config import SearchApiConfig
from place_harvester.engine import SearchClient
from place_harvester.errors import ConfigurationError, TransportError


def _response(status: int, payload: Any) -> httpx.Response:
    request = httpx.Request("GET", "https://serpapi.com/search.json")
    return httpx.Response(status, json=payload, request=request)


def _page(ids: list[str], has_next: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {"local_results": [{"place_id": pid, "title": pid} for pid in ids]}
    if has_next:
        payload["serpapi_pagination"] = {"next": "https://serpapi.com/search.json?start=next"}
    return payload


class _Transport:
    """Scripted replacement for ``httpx.Client.request``."""

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.params: list[dict[str, Any]] = []

    def __call__(self, method: str, url: str, params: dict[str, Any] | None = None, **_: Any) -> httpx.Response:
        self.params.append(dict(params or {}))
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _client(monkeypatch: pytest.MonkeyPatch, script: list[Any], **overrides: Any) -> tuple[SearchClient, _Transport]:
    config = SearchApiConfig(retry_backoff=0.0, **overrides)
    client = SearchClient(config, api_key="test-key", sleep=lambda _: None)
    transport = _Transport(script)
    monkeypatch.setattr(client._client, "request", transport)
    return client, transport


def test_missing_api_key_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        SearchClient(SearchApiConfig())


def test_api_key_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SERP_API_KEY", "from-env")
    client = SearchClient(SearchApiConfig())
    assert client.api_key == "from-env"
    client.close()


def test_search_follows_pagination_and_dedups(monkeypatch: pytest.MonkeyPatch) -> None:
    client, transport = _client(
        monkeypatch,
        [
            _response(200, _page(["a", "b"], has_next=True)),
            _response(200, _page(["b", "c"], has_next=False)),
        ],
    )
    records = client("Coffee in Oakland, California, USA")
    assert [record.place_id for record in records] == ["a", "b", "c"]
    assert [params["start"] for params in transport.params] == [0, 20]
    first = transport.params[0]
    assert first["engine"] == "google_maps"
    assert first["q"] == "Coffee in Oakland, California, USA"
    assert first["api_key"] == "test-key"
    assert first["type"] == "search"
    assert "ll" not in first


def test_search_stops_on_empty_page(monkeypatch: pytest.MonkeyPatch) -> None:
    client, transport = _client(
        monkeypatch,
        [
            _response(200, _page(["a"], has_next=True)),
            _response(200, {"local_results": [], "serpapi_pagination": {"next": "x"}}),
        ],
    )
    assert [record.place_id for record in client.search("Coffee")] == ["a"]
    assert len(transport.params) == 2


def test_search_truncates_to_result_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    client, transport = _client(
        monkeypatch,
        [
            _response(200, _page(["a", "b"], has_next=True)),
            _response(200, _page(["c", "d"], has_next=True)),
        ],
        page_size=2,
        result_limit=3,
    )
    assert [record.place_id for record in client.search("Coffee")] == ["a", "b", "c"]
    assert len(transport.params) == 2


def test_search_retries_transient_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    client, transport = _client(
        monkeypatch,
        [
            httpx.ConnectError("connection refused"),
            _response(200, _page(["a"], has_next=False)),
        ],
        retry_on_fail=1,
    )
    assert [record.place_id for record in client.search("Coffee")] == ["a"]
    assert len(transport.params) == 2


def test_search_raises_after_exhausting_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(
        monkeypatch,
        [_response(500, {}), _response(429, {})],
        retry_on_fail=1,
    )
    with pytest.raises(TransportError):
        client.search("Coffee")


def test_search_api_error_payload_is_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(monkeypatch, [_response(200, {"error": "Invalid API key."})], retry_on_fail=0)
    with pytest.raises(TransportError, match="Invalid API key"):
        client.search("Coffee")


def test_later_page_failure_keeps_partial_results(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(
        monkeypatch,
        [_response(200, _page(["a", "b"], has_next=True)), _response(503, {})],
        retry_on_fail=0,
    )
    assert [record.place_id for record in client.search("Coffee")] == ["a", "b"]


def test_items_without_place_id_are_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = {"local_results": [{"title": "no id"}, {"place_id": "a", "title": "ok"}, "junk"]}
    client, _ = _client(monkeypatch, [_response(200, payload)], ll="@37.8,-122.2,12z")
    records = client.search("Coffee")
    assert [record.place_id for record in records] == ["a"]
