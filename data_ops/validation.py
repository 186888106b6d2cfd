"""
Validation of trend data, time windows, and tag selections.

Every check returns a ValidationResult (errors + warnings) so callers can
surface warnings alongside data; ``raise_for_errors()`` converts errors
into a historian ValidationError.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

import numpy as np

from historian.catalog import validate_tag
from historian.errors import ValidationError
from historian.models import DataPoint, TagDescriptor

MAX_RANGE_DAYS = 365
LARGE_SERIES_POINTS = 100_000
# Gap warning: an interval this many times the mean interval
GAP_FACTOR = 10
# Only the leading intervals are inspected for gaps
GAP_SAMPLE_SIZE = 1000


@dataclass
class ValidationResult:
    """Outcome of a validation check."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """Raise ValidationError if any errors were recorded."""
        if self.errors:
            raise ValidationError("; ".join(self.errors), self.errors)

    def extend(self, other: "ValidationResult") -> "ValidationResult":
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        return self


def validate_time_range(
    start: datetime,
    end: datetime,
    max_days: int = MAX_RANGE_DAYS,
) -> ValidationResult:
    """Check a requested window: ordered, at least one second, at most ``max_days``."""
    result = ValidationResult()
    if start >= end:
        result.errors.append(
            f"Start ({start.isoformat()}) must be before end ({end.isoformat()})"
        )
        return result
    span = end - start
    if span < timedelta(seconds=1):
        result.errors.append("Time range must be at least 1 second")
    if span > timedelta(days=max_days):
        result.errors.append(f"Time range cannot exceed {max_days} days")
    return result


def validate_points(points: list[DataPoint], tag_name: str = "") -> ValidationResult:
    """Check a fetched sequence: strictly increasing timestamps, finite values.

    Empty sequences are valid (a sparse column may have no samples in range).
    Warnings flag very large series and large gaps in the leading intervals.
    """
    result = ValidationResult()
    label = tag_name or "Unknown"
    if not points:
        return result

    values = np.fromiter((p.value for p in points), dtype=np.float64, count=len(points))
    bad = int(np.count_nonzero(~np.isfinite(values)))
    if bad:
        result.errors.append(f"Tag {label} contains {bad} NaN/Infinity values")

    times = np.array([p.timestamp for p in points], dtype="datetime64[us]")
    deltas = np.diff(times)
    if len(deltas) and (deltas <= np.timedelta64(0, "us")).any():
        result.errors.append(f"Tag {label} timestamps are not strictly increasing")

    if len(points) > LARGE_SERIES_POINTS:
        result.warnings.append(
            f"Tag {label} has {len(points)} points, display may be slow"
        )

    head = deltas[:GAP_SAMPLE_SIZE].astype(np.int64)
    if len(head) > 1 and (head > 0).all():
        if head.max() > head.mean() * GAP_FACTOR:
            result.warnings.append(f"Tag {label} has large time gaps")
    return result


def validate_tag_selection(
    tags: Iterable[TagDescriptor],
    max_tags: int | None = None,
) -> ValidationResult:
    """Check a tag selection: non-empty, no duplicates, within limit, valid metadata."""
    if max_tags is None:
        import config
        max_tags = config.MAX_SELECTED_TAGS

    result = ValidationResult()
    tag_list = list(tags)
    if not tag_list:
        result.errors.append("At least one tag must be selected")
    if len(tag_list) > max_tags:
        result.errors.append(f"At most {max_tags} tags can be selected")

    seen = set()
    duplicates = set()
    for tag in tag_list:
        if tag.id in seen:
            duplicates.add(tag.id)
        seen.add(tag.id)
        result.errors.extend(validate_tag(tag))
    if duplicates:
        result.errors.append(f"Duplicate tags selected: {sorted(duplicates)}")
    return result
