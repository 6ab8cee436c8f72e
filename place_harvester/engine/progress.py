"""Durable lifecycle records for logical queries, plus per-fingerprint leases."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from ..errors import DuplicateDocumentError, LeaseLostError, QueryLockedError
from ..infra.storage import DocumentStore
from .fingerprint import fingerprint as make_fingerprint


class QueryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class QueryProgress(BaseModel):
    """Stored state of one logical query."""

    fingerprint: str
    keyword: str = ""
    country: str = ""
    state: str = ""
    city: str = ""
    status: QueryStatus = QueryStatus.PENDING
    progress_index: int = Field(default=0, ge=0)
    total_sub_targets: int = Field(default=0, ge=0)
    result_count: int = Field(default=0, ge=0)
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class ProgressLookup:
    exists: bool
    record: QueryProgress | None = None
    can_resume: bool = False


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ProgressStore:
    """Read and mutate query progress records keyed on fingerprint."""

    def __init__(self, store: DocumentStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock
        self.logger = structlog.get_logger("place_harvester.progress")

    @property
    def _history(self):
        return self.store.query_history

    @property
    def _leases(self):
        return self.store.query_leases

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def lookup(self, fingerprint: str) -> ProgressLookup:
        doc = self._history.find_one({"fingerprint": fingerprint})
        if doc is None:
            return ProgressLookup(exists=False)
        record = QueryProgress.model_validate(doc)
        can_resume = record.status is QueryStatus.IN_PROGRESS or (
            record.status is QueryStatus.FAILED and record.progress_index > 0
        )
        return ProgressLookup(exists=True, record=record, can_resume=can_resume)

    def create(
        self,
        keyword: str,
        country: str,
        state: str,
        city: str,
        total_sub_targets: int = 0,
    ) -> QueryProgress:
        """Upsert a fresh IN_PROGRESS record, replacing any previous run's state."""

        fp = make_fingerprint(keyword, country, state, city)
        now = _utcnow()
        doc = self._history.upsert(
            {"fingerprint": fp},
            {
                "keyword": keyword,
                "country": country,
                "state": state,
                "city": city,
                "status": QueryStatus.IN_PROGRESS.value,
                "progress_index": 0,
                "total_sub_targets": int(total_sub_targets),
                "result_count": 0,
                "error_message": None,
                "updated_at": now,
            },
            on_insert={"created_at": now},
        )
        return QueryProgress.model_validate(doc)

    def advance(self, fingerprint: str, progress_index: int, result_count: int | None = None) -> None:
        fields: dict[str, object] = {
            "progress_index": int(progress_index),
            "status": QueryStatus.IN_PROGRESS.value,
            "updated_at": _utcnow(),
        }
        if result_count is not None:
            fields["result_count"] = int(result_count)
        if not self._history.update({"fingerprint": fingerprint}, fields):
            self.logger.warning("advance_missing_record", fingerprint=fingerprint)

    def complete(self, fingerprint: str, total_results: int) -> None:
        now = _utcnow()
        # Upsert so a run whose create was lost still ends with a record
        self._history.upsert(
            {"fingerprint": fingerprint},
            {
                "status": QueryStatus.COMPLETED.value,
                "progress_index": 0,
                "result_count": int(total_results),
                "updated_at": now,
            },
            on_insert={"created_at": now},
        )

    def fail(self, fingerprint: str, error_message: str, progress_index: int = 0) -> None:
        updated = self._history.update(
            {"fingerprint": fingerprint},
            {
                "status": QueryStatus.FAILED.value,
                "error_message": error_message,
                "progress_index": int(progress_index),
                "updated_at": _utcnow(),
            },
        )
        if not updated:
            self.logger.warning("fail_missing_record", fingerprint=fingerprint)

    def recent(self, limit: int = 10) -> list[QueryProgress]:
        docs = self._history.find(sort="created_at", descending=True, limit=limit)
        return [QueryProgress.model_validate(doc) for doc in docs]

    def reset(self, keyword: str, country: str, state: str, city: str) -> QueryProgress:
        fp = make_fingerprint(keyword, country, state, city)
        self._history.delete({"fingerprint": fp})
        return self.create(keyword, country, state, city, 0)

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------
    def acquire_lease(self, fingerprint: str, owner: str, ttl_seconds: float) -> None:
        """Take the run lease for ``fingerprint`` or raise QueryLockedError.

        A fresh lease is an insert on the unique key; an expired or own lease is
        taken over with a compare-and-set on the previous owner and expiry, so
        only one contender can win.
        """

        now = self.clock()
        lease = {
            "fingerprint": fingerprint,
            "owner": owner,
            "acquired_at": now,
            "expires_at": now + ttl_seconds,
        }
        try:
            self._leases.insert(lease)
            return
        except DuplicateDocumentError:
            pass
        current = self._leases.find_one({"fingerprint": fingerprint})
        if current is None:
            # Released between our insert and read; one more insert attempt
            try:
                self._leases.insert(lease)
                return
            except DuplicateDocumentError as exc:
                raise QueryLockedError(f"Query {fingerprint[:12]} is already running") from exc
        if current.get("owner") != owner and float(current.get("expires_at") or 0) > now:
            raise QueryLockedError(f"Query {fingerprint[:12]} is already running")
        taken = self._leases.update(
            {
                "fingerprint": fingerprint,
                "owner": current.get("owner"),
                "expires_at": current.get("expires_at"),
            },
            {"owner": owner, "acquired_at": now, "expires_at": now + ttl_seconds},
        )
        if not taken:
            raise QueryLockedError(f"Query {fingerprint[:12]} is already running")
        if current.get("owner") != owner:
            self.logger.info("lease_taken_over", fingerprint=fingerprint, previous_owner=current.get("owner"))

    def renew_lease(self, fingerprint: str, owner: str, ttl_seconds: float) -> None:
        renewed = self._leases.update(
            {"fingerprint": fingerprint, "owner": owner},
            {"expires_at": self.clock() + ttl_seconds},
        )
        if not renewed:
            raise LeaseLostError(f"Lease on query {fingerprint[:12]} was taken by another run")

    def release_lease(self, fingerprint: str, owner: str) -> None:
        self._leases.delete({"fingerprint": fingerprint, "owner": owner})


__all__ = ["ProgressLookup", "ProgressStore", "QueryProgress", "QueryStatus"]
