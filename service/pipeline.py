"""
TrendDataService — the staged fetch pipeline.

One request moves through cache check -> fetch of the missing ranges ->
sampling -> cache store, with the cancel event threaded through every
stage. Each request records its state history so callers and tests can see
exactly which path it took:

    IDLE -> CACHE_CHECK -> HIT ------------------------> SAMPLING -> DONE
                        -> PARTIAL -> FETCHING -> SAMPLING -> CACHE_STORE -> DONE
                        -> MISS ----> FETCHING -> ...

Any non-terminal state may move to CANCELLED or FAILED; neither stores
anything in the cache.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from data_ops.cache import LookupStatus, MissingRange, RangeCache
from data_ops.sampling import Sampler
from data_ops.validation import validate_tag_selection, validate_time_range
from historian.catalog import TagCatalog
from historian.connection import Connector, build_connector
from historian.errors import CancelledOperation, HistorianError, ValidationError
from historian.fetch import FetchBatchResult, FetchError, Fetcher, merge_points
from historian.gate import ConnectionGate
from historian.models import DataPoint, TagDescriptor
from historian.planner import TableBatchPlanner

from .logging import log_error, reset_request_id, set_request_id, tagged
from .progress import NullProgressSink, ProgressSink, ProgressUpdate

logger = logging.getLogger("trendview")


class FetchState(Enum):
    """Lifecycle states of a fetch request."""
    IDLE = "idle"
    CACHE_CHECK = "cache_check"
    HIT = "hit"
    PARTIAL = "partial"
    MISS = "miss"
    FETCHING = "fetching"
    SAMPLING = "sampling"
    CACHE_STORE = "cache_store"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({FetchState.DONE, FetchState.CANCELLED, FetchState.FAILED})

_TRANSITIONS = {
    FetchState.IDLE: {FetchState.CACHE_CHECK},
    FetchState.CACHE_CHECK: {FetchState.HIT, FetchState.PARTIAL, FetchState.MISS},
    FetchState.HIT: {FetchState.SAMPLING, FetchState.DONE},
    FetchState.PARTIAL: {FetchState.FETCHING},
    FetchState.MISS: {FetchState.FETCHING},
    FetchState.FETCHING: {FetchState.SAMPLING},
    FetchState.SAMPLING: {FetchState.CACHE_STORE, FetchState.DONE},
    FetchState.CACHE_STORE: {FetchState.DONE},
}


class TagSource(Enum):
    """Where a tag's points came from."""
    CACHE = "cache"
    DATABASE = "database"
    MIXED = "mixed"


@dataclass
class FetchRequest:
    """A single trend request and its state history."""

    tag_ids: list[int]
    start: datetime
    end: datetime
    max_points: Optional[int] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: FetchState = FetchState.IDLE
    history: list[FetchState] = field(default_factory=lambda: [FetchState.IDLE])

    def transition(self, new_state: FetchState) -> None:
        """Move to ``new_state``.

        Raises:
            RuntimeError: If the move is not allowed from the current state.
        """
        allowed = _TRANSITIONS.get(self.state, set())
        if self.state not in TERMINAL_STATES and new_state in (
            FetchState.CANCELLED, FetchState.FAILED
        ):
            allowed = allowed | {new_state}
        if new_state not in allowed:
            raise RuntimeError(
                f"Invalid transition {self.state.value} -> {new_state.value} "
                f"for request {self.request_id}"
            )
        self.state = new_state
        self.history.append(new_state)


@dataclass
class TagSeries:
    """Result for one tag: the full sequence and its display sample."""

    tag: TagDescriptor
    points: list[DataPoint]
    sampled: list[DataPoint]
    source: TagSource

    def summary(self) -> dict:
        return {
            "tag_id": self.tag.id,
            "name": self.tag.display_name,
            "num_points": len(self.points),
            "num_sampled": len(self.sampled),
            "source": self.source.value,
            "time_min": self.points[0].timestamp.isoformat() if self.points else None,
            "time_max": self.points[-1].timestamp.isoformat() if self.points else None,
        }


@dataclass
class FetchOutcome:
    """What a request produced.

    Attributes:
        request_id: Id shared with the request's log lines.
        state: DONE, or FAILED when no tag succeeded.
        series: Tag id -> TagSeries for every tag that succeeded.
        errors: Human-readable error messages (unknown tags, failed groups).
        fetch_errors: Structured per-group failures from the fetcher.
        warnings: Validation warnings.
        history: State sequence the request went through.
    """

    request_id: str
    state: FetchState
    series: dict[int, TagSeries] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    fetch_errors: list[FetchError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    history: list[FetchState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is FetchState.DONE and not self.errors


def _check_cancel(cancel_event: Optional[threading.Event], where: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledOperation(f"Request cancelled {where}")


class TrendDataService:
    """Cache-aware trend data access.

    Every collaborator is injected; ``build_service()`` wires them from
    config. Pass ``cache=None`` to always read from the database.
    """

    def __init__(
        self,
        catalog: TagCatalog,
        fetcher: Fetcher,
        cache: Optional[RangeCache] = None,
        sampler: Optional[Sampler] = None,
        planner: Optional[TableBatchPlanner] = None,
        progress: Optional[ProgressSink] = None,
        max_selected_tags: Optional[int] = None,
    ):
        self.catalog = catalog
        self.fetcher = fetcher
        self.cache = cache
        self.sampler = sampler or Sampler()
        self.planner = planner or TableBatchPlanner()
        self.progress = progress or NullProgressSink()
        self.max_selected_tags = max_selected_tags

    # ---- Lifecycle ----

    def start(self) -> "TrendDataService":
        if self.cache is not None:
            self.cache.start()
        return self

    def close(self) -> None:
        if self.cache is not None:
            self.cache.stop()

    def __enter__(self) -> "TrendDataService":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def check_connection(self) -> bool:
        """True if the historian database is reachable."""
        return self.fetcher.connector.check_connectivity()

    # ---- Stages ----

    def _resolve_tags(self, tag_ids: list[int], outcome: FetchOutcome) -> list[TagDescriptor]:
        """Look up tag ids, reporting unknown ones in ``outcome.errors``."""
        if not tag_ids:
            raise ValidationError("At least one tag must be selected")
        known = []
        for tag_id in dict.fromkeys(tag_ids):
            tag = self.catalog.get(tag_id)
            if tag is None:
                outcome.errors.append(f"Unknown tag id {tag_id}")
            else:
                known.append(tag)
        if known:
            validate_tag_selection(known, self.max_selected_tags).raise_for_errors()
        return known

    def _check_cache(
        self,
        tags: list[TagDescriptor],
        start: datetime,
        end: datetime,
    ) -> tuple[dict[int, list[DataPoint]], dict[int, list[MissingRange]]]:
        """Return (cached points per tag, missing ranges per tag)."""
        cached: dict[int, list[DataPoint]] = {}
        missing: dict[int, list[MissingRange]] = {}
        for tag in tags:
            if self.cache is None:
                missing[tag.id] = [MissingRange(start, end)]
                continue
            lookup = self.cache.lookup(tag.id, start, end)
            if lookup.status is not LookupStatus.MISS:
                cached[tag.id] = lookup.points
            if lookup.missing_ranges:
                missing[tag.id] = lookup.missing_ranges
            logger.debug(
                f"[Pipeline] {tag.display_name}: cache {lookup.status.value}",
                extra=tagged("cache"),
            )
        return cached, missing

    def _fetch_missing(
        self,
        tags: list[TagDescriptor],
        missing: dict[int, list[MissingRange]],
        cancel_event: Optional[threading.Event],
        progress: ProgressSink,
    ) -> FetchBatchResult:
        """Plan every missing range (tags sharing a range share its plans) and fetch."""
        by_range: dict[MissingRange, list[TagDescriptor]] = {}
        for tag in tags:
            for window in missing.get(tag.id, ()):
                by_range.setdefault(window, []).append(tag)

        plans = []
        for window, window_tags in by_range.items():
            plans.extend(self.planner.plan(
                window_tags, window.start, window.end,
                include_start=window.include_start, include_end=window.include_end,
            ))
        return self.fetcher.fetch(plans, cancel_event=cancel_event, progress=progress)

    # ---- Public API ----

    def fetch(
        self,
        tag_ids: Iterable[int],
        start: datetime,
        end: datetime,
        cancel_event: Optional[threading.Event] = None,
        max_points: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
    ) -> FetchOutcome:
        """Read ``tag_ids`` over ``[start, end]``, reusing cached data.

        Args:
            tag_ids: Catalog ids. Unknown ids are reported in ``errors``.
            start: Window start (inclusive).
            end: Window end (inclusive).
            cancel_event: Cooperative cancellation signal.
            max_points: Sample target per tag (sampler default when None).
            progress: Sink for this request (service default when None).

        Returns:
            FetchOutcome with per-tag series and per-group errors.

        Raises:
            ValidationError: If the window or tag selection is invalid.
            CancelledOperation: If ``cancel_event`` is set. Nothing is cached.
        """
        progress = progress or self.progress
        request = FetchRequest(list(tag_ids), start, end, max_points)
        outcome = FetchOutcome(request_id=request.request_id, state=request.state)
        token = set_request_id(request.request_id)
        try:
            validate_time_range(start, end).raise_for_errors()
            if max_points is not None and max_points < 2:
                raise ValidationError(f"max_points must be >= 2, got {max_points}")
            tags = self._resolve_tags(request.tag_ids, outcome)
            if not tags:
                request.transition(FetchState.FAILED)
                logger.warning(f"[Pipeline] Request {request.request_id}: no known tags")
                return outcome
            logger.info(
                f"[Pipeline] Request {request.request_id}: {len(tags)} tags "
                f"{start.isoformat()} .. {end.isoformat()}"
            )
            _check_cancel(cancel_event, "before cache check")

            request.transition(FetchState.CACHE_CHECK)
            progress.report(ProgressUpdate("Checking cache", 0))
            cached, missing = self._check_cache(tags, start, end)
            if not missing:
                request.transition(FetchState.HIT)
            elif cached:
                request.transition(FetchState.PARTIAL)
            else:
                request.transition(FetchState.MISS)

            batch = FetchBatchResult()
            if missing:
                request.transition(FetchState.FETCHING)
                batch = self._fetch_missing(tags, missing, cancel_event, progress)
                outcome.fetch_errors.extend(batch.errors)
                outcome.warnings.extend(batch.warnings)
                for error in batch.errors:
                    outcome.errors.append(
                        f"Table {error.table_number} ({error.kind}): {error.message}"
                    )

            _check_cancel(cancel_event, "before sampling")
            request.transition(FetchState.SAMPLING)
            for tag in tags:
                if tag.id in batch.failed_tags:
                    continue
                fetched = batch.points.get(tag.id)
                if tag.id in missing and fetched is None:
                    continue
                from_cache = cached.get(tag.id)
                if fetched is None:
                    points, source = from_cache or [], TagSource.CACHE
                elif from_cache is None:
                    points, source = fetched, TagSource.DATABASE
                else:
                    points, source = merge_points(from_cache, fetched), TagSource.MIXED
                outcome.series[tag.id] = TagSeries(
                    tag=tag,
                    points=points,
                    sampled=self.sampler.sample(points, max_points),
                    source=source,
                )
            progress.report(ProgressUpdate("Sampling complete", 100))

            _check_cancel(cancel_event, "before cache store")
            to_store = [
                s for tag_id, s in outcome.series.items()
                if tag_id in missing and s.source is not TagSource.CACHE
            ]
            if self.cache is not None and to_store:
                request.transition(FetchState.CACHE_STORE)
                for series in to_store:
                    self.cache.store(series.tag.id, start, end, series.points)

            if outcome.series:
                request.transition(FetchState.DONE)
            else:
                request.transition(FetchState.FAILED)
                logger.warning(f"[Pipeline] Request {request.request_id}: no tag succeeded")
            logger.info(
                f"[Pipeline] Request {request.request_id} {request.state.value}: "
                f"{len(outcome.series)} series, {len(outcome.errors)} errors"
            )
        except CancelledOperation:
            if request.state not in TERMINAL_STATES:
                request.transition(FetchState.CANCELLED)
            logger.info(f"[Pipeline] Request {request.request_id} cancelled")
            raise
        except HistorianError as e:
            if request.state not in TERMINAL_STATES:
                request.transition(FetchState.FAILED)
            log_error(
                f"Request {request.request_id} failed",
                exc=e,
                context={"tags": request.tag_ids, "start": start, "end": end},
            )
            raise
        finally:
            outcome.state = request.state
            outcome.history = list(request.history)
            reset_request_id(token)
        return outcome

    def cache_statistics(self) -> Optional[dict]:
        """Cache occupancy as a dict, or None when caching is disabled."""
        return self.cache.statistics().to_dict() if self.cache is not None else None


def build_service(
    connector: Optional[Connector] = None,
    progress: Optional[ProgressSink] = None,
) -> TrendDataService:
    """Wire a TrendDataService from config.

    Loads the tag catalog, so the database must be reachable.

    Raises:
        DatabaseConnectionError: If the catalog cannot be read.
    """
    import config

    connector = connector or build_connector()
    catalog = TagCatalog.load(connector)
    gate = ConnectionGate(config.MAX_CONCURRENT_CONNECTIONS)
    return TrendDataService(
        catalog=catalog,
        fetcher=Fetcher(connector, gate),
        cache=RangeCache() if config.ENABLE_DATA_CACHE else None,
        sampler=Sampler(),
        progress=progress,
        max_selected_tags=config.MAX_SELECTED_TAGS,
    )
