"""Place record model and mapping from raw search results."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field


class PlaceRecord(BaseModel):
    """One place returned by the search API; ``place_id`` is the dedup key."""

    model_config = ConfigDict(extra="ignore")

    place_id: str = Field(min_length=1)
    title: str | None = None
    address: str | None = None
    phone: str | None = None
    website: str | None = None
    rating: float | None = None
    reviews: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    type: str | None = None
    thumbnail: str | None = None
    hours: str | None = None
    price_level: str | None = None
    extensions: str | None = None
    types: str | None = None
    service_options: str | None = None
    reviews_link: str | None = None
    photos_link: str | None = None

    @classmethod
    def from_serpapi(cls, item: Mapping[str, Any]) -> "PlaceRecord":
        """Map one ``local_results`` entry; nested values are kept as JSON text."""

        coordinates = item.get("gps_coordinates") or {}
        return cls(
            place_id=str(item.get("place_id") or ""),
            title=item.get("title"),
            address=item.get("address"),
            phone=item.get("phone"),
            website=item.get("website"),
            rating=item.get("rating"),
            reviews=item.get("reviews"),
            latitude=coordinates.get("latitude"),
            longitude=coordinates.get("longitude"),
            type=item.get("type"),
            thumbnail=item.get("thumbnail"),
            hours=_as_json(item.get("operating_hours")),
            price_level=item.get("price"),
            extensions=_as_json(item.get("extensions")),
            types=_as_json(item.get("types")),
            service_options=_as_json(item.get("service_options")),
            reviews_link=item.get("reviews_link"),
            photos_link=item.get("photos_link"),
        )


@dataclass(slots=True, frozen=True)
class QueryContext:
    """Semantic parameters and fingerprint of the query that owns a write."""

    keyword: str
    country: str
    state: str
    city: str
    fingerprint: str


def _as_json(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return json.dumps(value, ensure_ascii=False)


def extract_city(address: str | None) -> str:
    """Best-effort city guess from a free-form address.

    Takes the second-to-last comma separated segment and keeps its first word:
    ``"123 Main St, Springfield, IL 62701"`` gives ``"Springfield"``. Multi-word
    cities are truncated (``"New York"`` becomes ``"New"``); the result is only
    an approximation for state-wide queries that carry no explicit city.
    """

    if not address:
        return ""
    parts = address.split(",")
    if len(parts) < 2:
        return ""
    segment = parts[-2].strip()
    if not segment:
        return ""
    return segment.split(" ")[0]


__all__ = ["PlaceRecord", "QueryContext", "extract_city"]
