"""Pydantic models used across place-harvester configuration."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class StorageBackend(str, Enum):
    """Document store implementations available to the harvester."""

    SQLITE = "sqlite"
    MONGODB = "mongodb"


class StorageConfig(BaseModel):
    """Where query progress and place records are persisted."""

    backend: StorageBackend = StorageBackend.SQLITE
    mongo_uri: str | None = Field(
        default=None,
        description="MongoDB connection string; falls back to the MONGODB_URI env var.",
    )
    database: str = "place_harvester"
    sqlite_path: Path = Field(default=Path("data/harvester.db"))

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_mongo_uri(self) -> str | None:
        return self.mongo_uri or os.environ.get("MONGODB_URI") or None

    def resolved_sqlite_path(self, base_dir: Path) -> Path:
        if not self.sqlite_path.is_absolute():
            return (base_dir / self.sqlite_path).resolve()
        return self.sqlite_path


class SearchApiConfig(BaseModel):
    """Parameters for the SerpApi Google Maps engine."""

    endpoint: str = "https://serpapi.com/search.json"
    engine: str = "google_maps"
    api_key_env: str = "SERP_API_KEY"
    page_size: int = 20
    result_limit: int = 100
    timeout: float = 20.0
    retry_on_fail: int = 1
    retry_backoff: float = 1.0
    ll: str | None = Field(
        default=None,
        description="Optional '@lat,lng,zoom' anchor; the query text usually carries the location.",
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "SearchApiConfig":
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")
        if self.result_limit < 1:
            raise ValueError("result_limit must be >= 1")
        if self.retry_on_fail < 0:
            raise ValueError("retry_on_fail must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        return self

    def resolved_api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) or None


class BatchConfig(BaseModel):
    """Controls for the automation loop."""

    inter_target_delay: float = 0.5
    lease_ttl_seconds: int = 900
    all_cities_sentinel: str = "ALL"

    @field_validator("inter_target_delay")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("inter_target_delay must be non-negative")
        return value

    @field_validator("lease_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lease_ttl_seconds must be > 0")
        return value


class GlobalConfig(BaseModel):
    """Global controls shared by every command."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    search_api: SearchApiConfig = Field(default_factory=SearchApiConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    enable_progress_bar: bool = True


__all__ = [
    "BatchConfig",
    "GlobalConfig",
    "SearchApiConfig",
    "StorageBackend",
    "StorageConfig",
]
