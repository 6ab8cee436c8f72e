"""Batch orchestrator wiring together fingerprints, progress, search, and dedup."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Sequence
from uuid import uuid4

import structlog

from .config import BatchConfig
from .engine import (
    PlacePersistence,
    PlaceRecord,
    ProgressLookup,
    ProgressStore,
    QueryContext,
    QueryProgress,
    QueryStatus,
    fingerprint,
)
from .errors import (
    ConfigurationError,
    HarvesterError,
    LeaseLostError,
    QueryLockedError,
    RunCancelledError,
    TransportError,
    ValidationError,
)
from .logging_conf import configure_logging, query_logger
from .ui import ProgressReporter

SearchFn = Callable[[str], Sequence[PlaceRecord]]

CANCELLED_MESSAGE = "Run cancelled"


class CancellationToken:
    """Cooperative stop signal checked between sub-targets."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""

        if timeout <= 0:
            return self._event.is_set()
        return self._event.wait(timeout)


@dataclass(slots=True)
class SearchOutcome:
    success: bool
    count: int = 0
    added: int = 0
    found: int = 0
    skipped: bool = False
    resumed_from_index: int | None = None
    fingerprint: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StatusReport:
    exists: bool
    status: QueryStatus | None = None
    progress_index: int = 0
    total_sub_targets: int = 0
    result_count: int = 0
    can_resume: bool = False
    fingerprint: str | None = None
    error_message: str | None = None

    @classmethod
    def from_lookup(cls, lookup: ProgressLookup, fp: str) -> "StatusReport":
        record = lookup.record
        if not lookup.exists or record is None:
            return cls(exists=False, fingerprint=fp)
        return cls(
            exists=True,
            status=record.status,
            progress_index=record.progress_index,
            total_sub_targets=record.total_sub_targets,
            result_count=record.result_count,
            can_resume=lookup.can_resume,
            fingerprint=fp,
            error_message=record.error_message,
        )


class BatchOrchestrator:
    """Run single-target and multi-city searches with resumable progress.

    Every run is keyed by the fingerprint of its semantic parameters. A
    completed run is skipped unless ``override`` is set; an interrupted or
    failed automation run resumes at the stored ``progress_index``.
    """

    def __init__(
        self,
        progress_store: ProgressStore,
        persistence: PlacePersistence,
        search: SearchFn,
        batch_config: BatchConfig | None = None,
    ) -> None:
        self.progress_store = progress_store
        self.persistence = persistence
        self.search = search
        self.batch_config = batch_config or BatchConfig()
        self.logger = configure_logging().bind(component="orchestrator")

    # ------------------------------------------------------------------
    def search_and_save(
        self,
        keyword: str,
        country: str,
        state: str,
        city: str | None = "",
        override: bool = False,
        sub_targets: Sequence[str] | None = None,
        cancel: CancellationToken | None = None,
        progress: ProgressReporter | None = None,
    ) -> SearchOutcome:
        try:
            keyword, country, state, city = self._validate(keyword, country, state, city, sub_targets)
        except ValidationError as exc:
            self.logger.warning("search_rejected", error=str(exc))
            return SearchOutcome(success=False, error=str(exc))

        automation = city == self.batch_config.all_cities_sentinel
        run_city = "" if automation else city
        fp = fingerprint(keyword, country, state, run_city)
        context = QueryContext(keyword, country, state, run_city, fp)
        log = query_logger(fp).bind(keyword=keyword, mode="automation" if automation else "single")
        owner = uuid4().hex
        lease_held = False

        try:
            lookup = self.progress_store.lookup(fp)
            if self._should_skip(lookup, override):
                return self._skipped(lookup, fp, log)

            self.progress_store.acquire_lease(fp, owner, self.batch_config.lease_ttl_seconds)
            lease_held = True
            # Another run may have finished while we waited for the lease
            lookup = self.progress_store.lookup(fp)
            if self._should_skip(lookup, override):
                return self._skipped(lookup, fp, log)

            if automation:
                targets = [target.strip() for target in sub_targets or [] if target and target.strip()]
                return self._run_automation(
                    context,
                    targets,
                    lookup,
                    override,
                    cancel or CancellationToken(),
                    progress or ProgressReporter(enabled=False),
                    owner,
                    log,
                )
            return self._run_single(context, lookup, override, log)
        except QueryLockedError as exc:
            log.warning("query_locked", error=str(exc))
            return SearchOutcome(success=False, fingerprint=fp, error=str(exc))
        except HarvesterError as exc:
            log.error("search_failed", error=str(exc))
            return SearchOutcome(success=False, fingerprint=fp, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            log.exception("search_crashed")
            return SearchOutcome(success=False, fingerprint=fp, error=_describe(exc))
        finally:
            if lease_held:
                self._release(fp, owner, log)

    # ------------------------------------------------------------------
    def check_status(self, keyword: str, country: str, state: str, city: str | None = "") -> StatusReport:
        city = (city or "").strip()
        if city == self.batch_config.all_cities_sentinel:
            city = ""
        fp = fingerprint(keyword.strip(), country.strip(), state.strip(), city)
        return StatusReport.from_lookup(self.progress_store.lookup(fp), fp)

    def check_automation_status(self, keyword: str, country: str, state: str) -> StatusReport:
        return self.check_status(keyword, country, state, "")

    def recent_queries(self, limit: int = 10) -> list[QueryProgress]:
        return self.progress_store.recent(limit)

    def reset_query(self, keyword: str, country: str, state: str, city: str | None = "") -> QueryProgress:
        city = (city or "").strip()
        if city == self.batch_config.all_cities_sentinel:
            city = ""
        record = self.progress_store.reset(keyword.strip(), country.strip(), state.strip(), city)
        self.logger.info("query_reset", fingerprint=record.fingerprint)
        return record

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------
    def _run_single(
        self,
        context: QueryContext,
        lookup: ProgressLookup,
        override: bool,
        log: structlog.BoundLogger,
    ) -> SearchOutcome:
        fp = context.fingerprint
        location = ", ".join(part for part in (context.city, context.state, context.country) if part)
        query = f"{context.keyword} in {location}"
        try:
            if override or not lookup.exists:
                self.progress_store.create(context.keyword, context.country, context.state, context.city, 0)
            log.info("single_search_start", query=query, override=override)
            records = self.search(query)
            stats = self.persistence.persist(records, context)
            # An override run reports only what its own fetch returned
            total = len({record.place_id for record in records}) if override else stats.total
            self.progress_store.complete(fp, total)
        except Exception as exc:  # noqa: BLE001
            message = _describe(exc)
            if isinstance(exc, HarvesterError):
                log.error("single_search_failed", query=query, error=message)
            else:
                log.exception("single_search_crashed", query=query)
            self._mark_failed(fp, message, 0, log)
            return SearchOutcome(success=False, fingerprint=fp, error=message)

        log.info("single_search_done", found=len(records), added=stats.added, total=total)
        return SearchOutcome(
            success=True,
            count=total,
            added=stats.added,
            found=len(records),
            fingerprint=fp,
        )

    def _run_automation(
        self,
        context: QueryContext,
        targets: list[str],
        lookup: ProgressLookup,
        override: bool,
        cancel: CancellationToken,
        progress: ProgressReporter,
        owner: str,
        log: structlog.BoundLogger,
    ) -> SearchOutcome:
        fp = context.fingerprint
        total = len(targets)
        ttl = self.batch_config.lease_ttl_seconds
        delay = self.batch_config.inter_target_delay

        if override or not lookup.exists or lookup.record is None:
            start_index = 0
            cumulative = 0
            self.progress_store.create(context.keyword, context.country, context.state, "", total)
        else:
            start_index = lookup.record.progress_index
            cumulative = lookup.record.result_count
            if start_index > total:
                log.warning("resume_index_out_of_range", progress_index=start_index, total=total)
                start_index = total

        log.info("automation_start", total=total, start_index=start_index, override=override)
        found = 0
        added = 0
        failed_targets = 0
        # Places fetched by this run; an override run counts only these
        fetched_ids: set[str] = set()
        # Last progress_index written to the store; failures never write a lower one
        written_index = start_index
        progress.set_label(context.keyword[:18])
        progress.start(total - start_index)
        try:
            for index in range(start_index, total):
                if cancel.cancelled:
                    raise RunCancelledError(CANCELLED_MESSAGE)
                city = targets[index]
                self.progress_store.renew_lease(fp, owner, ttl)
                self.progress_store.advance(fp, index + 1, result_count=cumulative)
                written_index = index + 1

                query = f"{context.keyword} in {city}, {context.state}, {context.country}"
                try:
                    records = self.search(query)
                except ConfigurationError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    failed_targets += 1
                    if isinstance(exc, TransportError):
                        log.warning("sub_target_failed", city=city, index=index, error=str(exc))
                    else:
                        log.exception("sub_target_crashed", city=city, index=index)
                    progress.advance(failed=True, current=city)
                else:
                    stats = self.persistence.persist(records, replace(context, city=city))
                    found += len(records)
                    added += stats.added
                    fetched_ids.update(record.place_id for record in records)
                    cumulative = len(fetched_ids) if override else stats.total
                    log.info("sub_target_done", city=city, index=index, found=len(records), added=stats.added)
                    progress.advance(success=True, current=city)

                if index + 1 < total and cancel.wait(delay):
                    raise RunCancelledError(CANCELLED_MESSAGE)

            total_results = len(fetched_ids) if override else self.persistence.count_for_query(fp)
            self.progress_store.complete(fp, total_results)
        except RunCancelledError:
            log.warning("automation_cancelled", progress_index=written_index)
            self._mark_failed(fp, CANCELLED_MESSAGE, written_index, log)
            return SearchOutcome(
                success=False,
                count=cumulative,
                added=added,
                found=found,
                resumed_from_index=start_index or None,
                fingerprint=fp,
                error=CANCELLED_MESSAGE,
            )
        except LeaseLostError as exc:
            # The new owner now drives the record; leave it untouched
            log.error("lease_lost", progress_index=written_index, error=str(exc))
            return SearchOutcome(success=False, added=added, found=found, fingerprint=fp, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            message = _describe(exc)
            if isinstance(exc, HarvesterError):
                log.error("automation_failed", progress_index=written_index, error=message)
            else:
                log.exception("automation_crashed", progress_index=written_index)
            self._mark_failed(fp, message, written_index, log)
            return SearchOutcome(
                success=False,
                count=cumulative,
                added=added,
                found=found,
                resumed_from_index=start_index or None,
                fingerprint=fp,
                error=message,
            )
        finally:
            progress.close()

        log.info(
            "automation_done",
            total_results=total_results,
            found=found,
            added=added,
            failed_targets=failed_targets,
        )
        return SearchOutcome(
            success=True,
            count=total_results,
            added=added,
            found=found,
            resumed_from_index=start_index or None,
            fingerprint=fp,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _validate(
        self,
        keyword: str,
        country: str,
        state: str,
        city: str | None,
        sub_targets: Sequence[str] | None,
    ) -> tuple[str, str, str, str]:
        keyword = (keyword or "").strip()
        country = (country or "").strip()
        state = (state or "").strip()
        city = (city or "").strip()
        missing = [name for name, value in (("keyword", keyword), ("country", country), ("state", state)) if not value]
        if missing:
            raise ValidationError(f"Missing required parameters: {', '.join(missing)}")
        if city == self.batch_config.all_cities_sentinel and not sub_targets:
            raise ValidationError(f"City '{city}' requires a list of cities to search")
        return keyword, country, state, city

    @staticmethod
    def _should_skip(lookup: ProgressLookup, override: bool) -> bool:
        return (
            not override
            and lookup.exists
            and lookup.record is not None
            and lookup.record.status is QueryStatus.COMPLETED
        )

    @staticmethod
    def _skipped(lookup: ProgressLookup, fp: str, log: structlog.BoundLogger) -> SearchOutcome:
        count = lookup.record.result_count if lookup.record is not None else 0
        log.info("query_already_completed", result_count=count)
        return SearchOutcome(success=True, count=count, skipped=True, fingerprint=fp)

    def _mark_failed(self, fp: str, message: str, progress_index: int, log: structlog.BoundLogger) -> None:
        try:
            self.progress_store.fail(fp, message, progress_index)
        except HarvesterError as exc:
            log.error("mark_failed_error", error=str(exc))

    def _release(self, fp: str, owner: str, log: structlog.BoundLogger) -> None:
        try:
            self.progress_store.release_lease(fp, owner)
        except HarvesterError as exc:
            log.warning("lease_release_failed", error=str(exc))


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


__all__ = [
    "BatchOrchestrator",
    "CancellationToken",
    "SearchOutcome",
    "StatusReport",
]
