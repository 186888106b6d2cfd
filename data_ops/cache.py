"""
In-memory cache of fetched trend data keyed by tag and time window.

RangeCache holds one CacheEntry per (tag, window) that was fetched in full.
Lookups reuse any unexpired entries whose windows intersect the requested
one and report the residual sub-ranges that still have to be fetched.

Entries expire a fixed TTL after creation (access does not extend it); a
daemon sweeper thread drops expired entries periodically and the
least-recently-accessed entries are evicted when the entry count exceeds
the configured maximum. All state sits behind one re-entrant lock that is
never held across I/O.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from historian.errors import ValidationError
from historian.models import DataPoint
from service.logging import tagged

logger = logging.getLogger("trendview")

CACHE_KEY_TIME_FORMAT = "%Y%m%d%H%M%S"
# Rough per-point footprint used for memory statistics
POINT_SIZE_BYTES = 32
# Extra entries removed on capacity eviction so every store does not evict
EVICTION_MARGIN = 10


def _key_time(ts: datetime) -> str:
    text = ts.strftime(CACHE_KEY_TIME_FORMAT)
    if ts.microsecond:
        text += f".{ts.microsecond:06d}"
    return text


def make_cache_key(tag_id: int, start: datetime, end: datetime) -> str:
    """Exact-range cache key, e.g. ``tag_7_20240101000000_20240101060000``.

    Bounds with a sub-second part carry it as a ``.ffffff`` suffix so windows
    that differ only below one second never share a key.
    """
    return f"tag_{tag_id}_{_key_time(start)}_{_key_time(end)}"


class LookupStatus(Enum):
    """Result kinds of RangeCache.lookup."""
    HIT = "hit"
    PARTIAL = "partial"
    MISS = "miss"


@dataclass(frozen=True)
class MissingRange:
    """A sub-range of a request not covered by cached data.

    A bound that abuts cached coverage is exclusive (the cached entry
    already holds any point at that instant).
    """

    start: datetime
    end: datetime
    include_start: bool = True
    include_end: bool = True

    def __repr__(self) -> str:
        left = "[" if self.include_start else "("
        right = "]" if self.include_end else ")"
        return f"MissingRange{left}{self.start.isoformat()}, {self.end.isoformat()}{right}"


@dataclass
class CacheLookup:
    """Outcome of a lookup.

    Attributes:
        status: HIT, PARTIAL or MISS.
        points: Cached points inside the requested window (a copy).
        missing_ranges: Residual ranges to fetch (empty for HIT; the whole
            window for MISS).
    """

    status: LookupStatus
    points: list[DataPoint] = field(default_factory=list)
    missing_ranges: list[MissingRange] = field(default_factory=list)

    @property
    def is_hit(self) -> bool:
        return self.status is LookupStatus.HIT

    @property
    def is_partial(self) -> bool:
        return self.status is LookupStatus.PARTIAL

    @property
    def is_miss(self) -> bool:
        return self.status is LookupStatus.MISS


@dataclass
class CacheEntry:
    """Points fetched for one tag over ``[range_start, range_end]``."""

    tag_id: int
    range_start: datetime
    range_end: datetime
    points: list[DataPoint]
    created_at: datetime
    last_accessed_at: datetime
    access_seq: int = 0

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.created_at >= ttl

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.range_start <= end and self.range_end >= start

    @property
    def estimated_memory_usage(self) -> int:
        return len(self.points) * POINT_SIZE_BYTES


@dataclass
class CacheStatistics:
    """Snapshot of cache occupancy."""

    total_entries: int
    expired_entries: int
    estimated_memory_usage: int

    def to_dict(self) -> dict:
        return {
            "total_entries": self.total_entries,
            "expired_entries": self.expired_entries,
            "estimated_memory_usage": self.estimated_memory_usage,
        }


def _residual_ranges(
    start: datetime,
    end: datetime,
    covered: list[tuple[datetime, datetime]],
) -> list[MissingRange]:
    """Parts of ``[start, end]`` not inside any closed interval in ``covered``."""
    merged: list[list[datetime]] = []
    for a, b in sorted(covered):
        if merged and a <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], b)
        else:
            merged.append([a, b])

    missing = []
    prev_end: Optional[datetime] = None
    for a, b in merged:
        if prev_end is None:
            if a > start:
                missing.append(MissingRange(start, a, True, False))
        else:
            missing.append(MissingRange(prev_end, a, False, False))
        prev_end = b
    if prev_end is None:
        return [MissingRange(start, end)]
    if prev_end < end:
        missing.append(MissingRange(prev_end, end, False, True))
    return missing


class RangeCache:
    """Time-window cache with exact and partial-overlap reuse.

    Args:
        ttl: Entry lifetime from creation (default config.CACHE_EXPIRATION_MINUTES).
        max_entries: Capacity before LRU eviction (default config.MAX_CACHE_SIZE).
        sweep_interval: Period of the background expiry sweep (default
            config.CACHE_SWEEP_INTERVAL_MINUTES).
        eviction_margin: Entries removed beyond the limit on eviction.
        clock: Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        ttl: Optional[timedelta] = None,
        max_entries: Optional[int] = None,
        sweep_interval: Optional[timedelta] = None,
        eviction_margin: int = EVICTION_MARGIN,
        clock: Callable[[], datetime] = datetime.now,
    ):
        import config

        self.ttl = ttl if ttl is not None else timedelta(minutes=config.CACHE_EXPIRATION_MINUTES)
        self.max_entries = max_entries if max_entries is not None else config.MAX_CACHE_SIZE
        self.sweep_interval = (
            sweep_interval if sweep_interval is not None
            else timedelta(minutes=config.CACHE_SWEEP_INTERVAL_MINUTES)
        )
        self.eviction_margin = max(0, eviction_margin)
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._by_tag: dict[int, set[str]] = {}
        self._access_seq = 0
        self._lock = threading.RLock()

        # Background sweeper control
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---- Lifecycle ----

    def start(self) -> None:
        """Start the background expiry sweeper (daemon, so it dies with the process)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop, name="RangeCacheSweeper", daemon=True,
        )
        self._thread.start()
        logger.debug("[Cache] Sweeper started")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the sweeper to stop and wait for it to finish."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.debug("[Cache] Sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> "RangeCache":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _sweep_loop(self) -> None:
        interval = self.sweep_interval.total_seconds()
        while not self._stop_event.wait(timeout=interval):
            try:
                self.sweep_expired()
            except Exception as e:
                logger.warning(f"[Cache] Sweep failed: {e}")

    # ---- Internal helpers (lock held by caller) ----

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        keys = self._by_tag.get(entry.tag_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_tag[entry.tag_id]

    def _touch(self, entry: CacheEntry, now: datetime) -> None:
        self._access_seq += 1
        entry.last_accessed_at = now
        entry.access_seq = self._access_seq

    def _evict_lru(self, keep: str) -> int:
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return 0
        to_remove = min(excess + self.eviction_margin, len(self._entries) - 1)
        candidates = sorted(
            (k for k in self._entries if k != keep),
            key=lambda k: (self._entries[k].last_accessed_at, self._entries[k].access_seq),
        )
        for key in candidates[:to_remove]:
            self._remove(key)
        logger.debug(f"[Cache] Evicted {to_remove} least-recently-used entries",
                     extra=tagged("cache"))
        return to_remove

    # ---- Public API ----

    def lookup(self, tag_id: int, start: datetime, end: datetime) -> CacheLookup:
        """Find cached data for ``tag_id`` over ``[start, end]``.

        Returns:
            HIT with the points when the window is fully covered, PARTIAL with
            the cached points plus the residual ranges, or MISS.

        Raises:
            ValidationError: If ``start >= end``.
        """
        if start >= end:
            raise ValidationError(
                f"Start ({start.isoformat()}) must be before end ({end.isoformat()})"
            )
        with self._lock:
            now = self._clock()

            key = make_cache_key(tag_id, start, end)
            exact = self._entries.get(key)
            if exact is not None:
                if exact.is_expired(now, self.ttl):
                    self._remove(key)
                elif exact.range_start == start and exact.range_end == end:
                    self._touch(exact, now)
                    return CacheLookup(LookupStatus.HIT, list(exact.points))

            intersecting = []
            for key in list(self._by_tag.get(tag_id, ())):
                entry = self._entries[key]
                if entry.is_expired(now, self.ttl):
                    self._remove(key)
                    continue
                if entry.overlaps(start, end):
                    intersecting.append(entry)

            if not intersecting:
                return CacheLookup(LookupStatus.MISS, [], [MissingRange(start, end)])

            merged: dict[datetime, DataPoint] = {}
            covered = []
            for entry in intersecting:
                self._touch(entry, now)
                covered.append((max(entry.range_start, start), min(entry.range_end, end)))
                for point in entry.points:
                    if start <= point.timestamp <= end:
                        merged.setdefault(point.timestamp, point)

        points = [merged[ts] for ts in sorted(merged)]
        missing = _residual_ranges(start, end, covered)
        if not missing:
            logger.debug(f"[Cache] HIT tag {tag_id} from {len(intersecting)} entries",
                         extra=tagged("cache"))
            return CacheLookup(LookupStatus.HIT, points)
        logger.debug(f"[Cache] PARTIAL tag {tag_id}: {len(points)} cached points, "
                     f"missing {missing}", extra=tagged("cache"))
        return CacheLookup(LookupStatus.PARTIAL, points, missing)

    def store(self, tag_id: int, start: datetime, end: datetime, points: list[DataPoint]) -> str:
        """Cache ``points`` as the complete data for ``tag_id`` over ``[start, end]``.

        The list is copied; later changes to the caller's list do not reach
        the cache. Storing the same window again replaces the entry.

        Returns:
            The entry's cache key.

        Raises:
            ValidationError: If ``start >= end``.
            ValueError: If any point lies outside ``[start, end]``.
        """
        if start >= end:
            raise ValidationError(
                f"Start ({start.isoformat()}) must be before end ({end.isoformat()})"
            )
        outside = [p for p in points if not start <= p.timestamp <= end]
        if outside:
            raise ValueError(
                f"{len(outside)} points lie outside {start.isoformat()} .. {end.isoformat()}"
            )

        key = make_cache_key(tag_id, start, end)
        with self._lock:
            now = self._clock()
            self._access_seq += 1
            self._entries[key] = CacheEntry(
                tag_id=tag_id,
                range_start=start,
                range_end=end,
                points=list(points),
                created_at=now,
                last_accessed_at=now,
                access_seq=self._access_seq,
            )
            self._by_tag.setdefault(tag_id, set()).add(key)
            if len(self._entries) > self.max_entries:
                self._evict_lru(keep=key)
        return key

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now, self.ttl)]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug(f"[Cache] Swept {len(expired)} expired entries", extra=tagged("cache"))
        return len(expired)

    def invalidate(self, tag_id: Optional[int] = None) -> int:
        """Drop entries for ``tag_id`` (or every entry when None). Returns the count."""
        with self._lock:
            if tag_id is None:
                count = len(self._entries)
                self._entries.clear()
                self._by_tag.clear()
                return count
            keys = list(self._by_tag.get(tag_id, ()))
            for key in keys:
                self._remove(key)
            return len(keys)

    def clear(self) -> None:
        """Remove all entries."""
        self.invalidate()

    def statistics(self) -> CacheStatistics:
        """Entry count, expired-but-not-yet-swept count, and estimated memory."""
        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())
            return CacheStatistics(
                total_entries=len(entries),
                expired_entries=sum(1 for e in entries if e.is_expired(now, self.ttl)),
                estimated_memory_usage=sum(e.estimated_memory_usage for e in entries),
            )

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
