"""HTTP client for the SerpApi Google Maps engine."""

from __future__ import annotations

import time
from typing import Any, Callable

import httpx
import structlog
from pydantic import ValidationError as ModelValidationError

from ..config import SearchApiConfig
from ..errors import ConfigurationError, TransportError
from .records import PlaceRecord


class SearchClient:
    """Fetch place records for a free-text query, following pagination.

    The client is the external fetch collaborator of the orchestrator: calling
    it returns an ordered, ``place_id``-unique list capped at ``result_limit``.
    """

    def __init__(
        self,
        config: SearchApiConfig,
        api_key: str | None = None,
        logger: structlog.BoundLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.api_key = api_key or config.resolved_api_key()
        if not self.api_key:
            raise ConfigurationError(f"{config.api_key_env} is not set in environment variables.")
        self.logger = logger or structlog.get_logger("place_harvester.search")
        self._sleep = sleep
        self._client = httpx.Client(follow_redirects=True, timeout=config.timeout)

    def __call__(self, query: str) -> list[PlaceRecord]:
        return self.search(query)

    def close(self) -> None:
        self._client.close()

    def search(self, query: str, limit: int | None = None) -> list[PlaceRecord]:
        limit = limit or self.config.result_limit
        results: list[PlaceRecord] = []
        start = 0
        while len(results) < limit:
            self.logger.debug("search_page", query=query, start=start)
            try:
                payload = self._fetch_page(query, start)
            except TransportError:
                if not results:
                    raise
                self.logger.warning("search_page_dropped", query=query, start=start, kept=len(results))
                break

            local_results = payload.get("local_results") or []
            if not local_results:
                break
            results.extend(self._map_items(local_results, query))

            if not (payload.get("serpapi_pagination") or {}).get("next"):
                break
            start += self.config.page_size
            # Guard against pagination that never terminates
            if start >= limit + self.config.page_size:
                break

        unique: dict[str, PlaceRecord] = {}
        for record in results:
            unique.setdefault(record.place_id, record)
        return list(unique.values())[:limit]

    # ------------------------------------------------------------------
    def _params(self, query: str, start: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "engine": self.config.engine,
            "q": query,
            "api_key": self.api_key,
            "start": start,
            "type": "search",
        }
        if self.config.ll:
            params["ll"] = self.config.ll
        return params

    def _fetch_page(self, query: str, start: int) -> dict[str, Any]:
        max_attempts = max(1, self.config.retry_on_fail + 1)
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                response = self._client.request(
                    "GET", self.config.endpoint, params=self._params(query, start)
                )
                if self._is_failure(response):
                    raise TransportError(f"Unexpected status {response.status_code}")
                payload = response.json()
                if not isinstance(payload, dict):
                    raise TransportError("Search API returned a non-object payload")
                if payload.get("error"):
                    raise TransportError(f"Search API error: {payload['error']}")
                return payload
            except (httpx.HTTPError, ValueError, TransportError) as exc:
                last_error = exc
                self.logger.warning(
                    "fetch_error",
                    query=query,
                    start=start,
                    attempt=attempt,
                    error=str(exc),
                )
            if attempt < max_attempts and self.config.retry_backoff > 0:
                self._sleep(self.config.retry_backoff * attempt)
        raise TransportError(
            f"Search failed after {max_attempts} attempts: {query} ({last_error})"
        ) from last_error

    def _map_items(self, items: list[Any], query: str) -> list[PlaceRecord]:
        mapped: list[PlaceRecord] = []
        for item in items:
            if not isinstance(item, dict) or not item.get("place_id"):
                self.logger.debug("search_item_without_id", query=query)
                continue
            try:
                mapped.append(PlaceRecord.from_serpapi(item))
            except ModelValidationError as exc:
                self.logger.warning(
                    "search_item_invalid", query=query, place_id=item.get("place_id"), error=str(exc)
                )
        return mapped

    @staticmethod
    def _is_failure(response: httpx.Response) -> bool:
        status_code = response.status_code
        if status_code >= 500:
            return True
        if status_code in {400, 401, 403, 429}:
            return True
        return False


__all__ = ["SearchClient"]
