"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository, parse_city_entries
from .models import (
    BatchConfig,
    GlobalConfig,
    SearchApiConfig,
    StorageBackend,
    StorageConfig,
)

__all__ = [
    "BatchConfig",
    "ConfigLocator",
    "ConfigRepository",
    "GlobalConfig",
    "SearchApiConfig",
    "StorageBackend",
    "StorageConfig",
    "parse_city_entries",
]
