"""
Time range types and parsing for trend requests.

Historian timestamps are naive local wall-clock values, so every datetime
produced here is naive. Supports relative expressions ("last 6 hours"),
explicit ranges ("2024-01-01 00:00 to 2024-01-01 06:00") and single dates.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, Optional


class TimeRangeError(ValueError):
    """Raised when a time expression cannot be parsed.

    The message is user-facing and suggests valid formats.
    """


class TimeRange:
    """A closed time window ``[start, end]`` of naive datetimes.

    Raises:
        ValueError: If start >= end.
    """

    def __init__(self, start: datetime, end: datetime):
        if start.tzinfo is not None:
            start = start.replace(tzinfo=None)
        if end.tzinfo is not None:
            end = end.replace(tzinfo=None)
        if start >= end:
            raise ValueError(
                f"Start ({start.isoformat()}) must be before end ({end.isoformat()})"
            )
        self.start = start
        self.end = end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def __repr__(self) -> str:
        return f"TimeRange({self.start.isoformat()}, {self.end.isoformat()})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, TimeRange):
            return NotImplemented
        return self.start == other.start and self.end == other.end


_DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d",
)

_UNITS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


def parse_datetime(text: str) -> datetime:
    """Parse one datetime in any of the supported formats.

    Raises:
        TimeRangeError: If none of the formats match.
    """
    s = text.strip()
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    raise TimeRangeError(
        f"Cannot parse datetime '{s}'. Use 'YYYY-MM-DD', 'YYYY-MM-DD HH:MM' "
        "or 'YYYY-MM-DD HH:MM:SS'."
    )


def parse_time_range(
    text: str,
    now: Optional[Callable[[], datetime]] = None,
) -> TimeRange:
    """Parse a time expression into a TimeRange.

    Supports:
      - Relative: "last 30 minutes", "last 6 hours", "last 2 days", "last week"
      - Range: "2024-01-01 00:00 to 2024-01-01 06:00"
      - Single date: "2024-01-15" (expands to the full day)

    Args:
        text: Time expression.
        now: Clock for relative expressions (default ``datetime.now``).

    Raises:
        TimeRangeError: If the input cannot be parsed.
    """
    clock = now or datetime.now
    text_lower = text.lower().strip()

    match = re.fullmatch(r"last\s+(\d+)?\s*(minute|hour|day|week)s?", text_lower)
    if match:
        count = int(match.group(1) or 1)
        end = clock().replace(microsecond=0)
        return TimeRange(end - count * _UNITS[match.group(2)], end)

    if " to " in text:
        first, second = text.split(" to ", 1)
        try:
            return TimeRange(parse_datetime(first), parse_datetime(second))
        except ValueError as e:
            raise TimeRangeError(f"Could not parse time range '{text}': {e}") from e

    if re.match(r"^\d{4}-\d{2}-\d{2}$", text.strip()):
        day = parse_datetime(text)
        return TimeRange(day, day + timedelta(days=1))

    raise TimeRangeError(
        f"Could not parse time range '{text}'. Supported formats:\n"
        "  - Relative: 'last 6 hours', 'last 2 days', 'last week'\n"
        "  - Range: '2024-01-01 00:00 to 2024-01-01 06:00'\n"
        "  - Date: '2024-01-15' (single day)"
    )
