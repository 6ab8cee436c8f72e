"""First-writer-wins persistence of place records keyed on place_id."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

import structlog

from ..errors import DuplicateDocumentError
from ..infra.storage import DocumentStore
from .records import PlaceRecord, QueryContext, extract_city


@dataclass(slots=True)
class PersistStats:
    total: int
    added: int


class PlacePersistence:
    """Idempotent writer for place records.

    A record is inserted once per ``place_id`` across the whole store; later
    observations, from any query, are skipped without touching the stored
    attribution.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.logger = structlog.get_logger("place_harvester.dedup")

    def persist(self, records: Iterable[PlaceRecord], owner: QueryContext) -> PersistStats:
        places = self.store.place_results
        added = 0
        for record in records:
            if places.find_one({"place_id": record.place_id}) is not None:
                continue
            document = record.model_dump()
            document.update(
                keyword=owner.keyword,
                country=owner.country,
                state=owner.state,
                city=owner.city or extract_city(record.address),
                search_query_id=owner.fingerprint,
                created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )
            try:
                places.insert(document)
            except DuplicateDocumentError:
                # Another writer stored it between our check and insert
                self.logger.debug("place_insert_raced", place_id=record.place_id)
                continue
            added += 1
        return PersistStats(total=self.count_for_query(owner.fingerprint), added=added)

    def count_for_query(self, fingerprint: str) -> int:
        return self.store.place_results.count({"search_query_id": fingerprint})

    def count_all(self) -> int:
        return self.store.place_results.count()


__all__ = ["PersistStats", "PlacePersistence"]
