"""Configuration loading helpers for place-harvester."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import yaml

from .models import GlobalConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
GLOBAL_CONFIG_FILENAME = "global_config.yaml"


def _slugify(name: str) -> str:
    return "".join(ch.lower() if ch.isalnum() else "-" for ch in name).strip("-")


def _read_file(path: Path) -> object:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def _read_mapping(path: Path) -> dict:
    data = _read_file(path) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


def parse_city_entries(payload: object, origin: Path | str = "<inline>") -> list[str]:
    """Normalise a city list payload into ordered names.

    Entries may be plain strings or mappings carrying a ``name`` key. A mapping
    with a top-level ``cities`` key is unwrapped first. Order is preserved and
    blank names are dropped.
    """

    if isinstance(payload, dict) and "cities" in payload:
        payload = payload["cities"]
    if not isinstance(payload, list):
        raise ValueError(f"City list must be a sequence: {origin}")
    names: list[str] = []
    for entry in payload:
        if isinstance(entry, dict):
            name = entry.get("name")
        else:
            name = entry
        if name is None:
            continue
        text = str(name).strip()
        if text:
            names.append(text)
    return names


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    locations_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get("PLACE_HARVESTER_HOME")
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.locations_dir = (self.data_dir / "locations").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.locations_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def global_config_path(self) -> Path:
        return self.data_dir / GLOBAL_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._global_cache: GlobalConfig | None = None

    # ------------------------------------------------------------------
    # Global configuration helpers
    # ------------------------------------------------------------------
    def load_global_config(self) -> GlobalConfig:
        if self._global_cache is not None:
            return self._global_cache
        path = self.locator.global_config_path()
        if path.exists():
            payload = _read_mapping(path)
            global_cfg = GlobalConfig.model_validate(payload)
        else:
            global_cfg = GlobalConfig()
            self.save_global_config(global_cfg)
        self._global_cache = global_cfg
        return global_cfg

    def save_global_config(self, config: GlobalConfig) -> None:
        path = self.locator.global_config_path()
        payload = config.model_dump(mode="json")
        _write_file(path, payload)
        self._global_cache = config

    # ------------------------------------------------------------------
    # City catalogs
    # ------------------------------------------------------------------
    def catalog_path(self, country: str, state: str) -> Path:
        base = self.locator.locations_dir / _slugify(country)
        for suffix in CONFIG_EXTENSIONS:
            candidate = base / f"{_slugify(state)}{suffix}"
            if candidate.exists():
                return candidate
        return base / f"{_slugify(state)}.yaml"

    def list_catalogs(self) -> Iterable[Path]:
        for path in sorted(self.locator.locations_dir.glob("*/*")):
            if path.is_file() and path.suffix in CONFIG_EXTENSIONS:
                yield path

    def load_cities(self, country: str, state: str) -> list[str]:
        path = self.catalog_path(country, state)
        if not path.exists():
            raise FileNotFoundError(f"City catalog not found for {state}, {country}: {path}")
        return self.load_cities_file(path)

    def load_cities_file(self, path: Path) -> list[str]:
        if not path.exists():
            raise FileNotFoundError(f"City list not found: {path}")
        if path.suffix in CONFIG_EXTENSIONS:
            return parse_city_entries(_read_file(path), path)
        lines = path.read_text(encoding="utf-8").splitlines()
        return [line.strip() for line in lines if line.strip()]

    def save_cities(self, country: str, state: str, cities: Iterable[str]) -> Path:
        path = self.locator.locations_dir / _slugify(country) / f"{_slugify(state)}.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        _write_file(path, {"cities": [str(city) for city in cities]})
        return path


__all__ = ["ConfigLocator", "ConfigRepository", "CONFIG_EXTENSIONS", "parse_city_entries"]
