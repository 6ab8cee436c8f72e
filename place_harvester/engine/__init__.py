"""Engine components: fingerprint → progress → search → dedup persistence."""

from .dedup import PersistStats, PlacePersistence
from .fingerprint import fingerprint
from .progress import ProgressLookup, ProgressStore, QueryProgress, QueryStatus
from .records import PlaceRecord, QueryContext, extract_city
from .search_client import SearchClient

__all__ = [
    "PersistStats",
    "PlacePersistence",
    "PlaceRecord",
    "ProgressLookup",
    "ProgressStore",
    "QueryContext",
    "QueryProgress",
    "QueryStatus",
    "SearchClient",
    "extract_city",
    "fingerprint",
]
