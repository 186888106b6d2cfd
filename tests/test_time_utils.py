"""Tests for service.time_utils — TimeRange and time-expression parsing."""

from datetime import datetime, timedelta, timezone

import pytest

from service.time_utils import TimeRange, TimeRangeError, parse_datetime, parse_time_range

NOW = datetime(2024, 3, 10, 14, 30, 15, 123456)


def _clock():
    return NOW


class TestTimeRange:
    def test_rejects_inverted(self):
        with pytest.raises(ValueError):
            TimeRange(NOW, NOW)

    def test_strips_timezone(self):
        tr = TimeRange(datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 1, 2))
        assert tr.start.tzinfo is None
        assert tr.duration == timedelta(days=1)

    def test_equality(self):
        assert TimeRange(NOW, NOW + timedelta(1)) == TimeRange(NOW, NOW + timedelta(1))


class TestParse:
    @pytest.mark.parametrize("text,expected", [
        ("2024-01-01", datetime(2024, 1, 1)),
        ("2024-01-01 06:30", datetime(2024, 1, 1, 6, 30)),
        ("2024-01-01T06:30:05", datetime(2024, 1, 1, 6, 30, 5)),
    ])
    def test_parse_datetime(self, text, expected):
        assert parse_datetime(text) == expected

    def test_parse_datetime_error(self):
        with pytest.raises(TimeRangeError):
            parse_datetime("yesterday-ish")

    def test_relative(self):
        tr = parse_time_range("last 6 hours", now=_clock)
        assert tr.end == NOW.replace(microsecond=0)
        assert tr.duration == timedelta(hours=6)

    def test_relative_without_count(self):
        assert parse_time_range("last week", now=_clock).duration == timedelta(weeks=1)
        assert parse_time_range("Last 30 Minutes", now=_clock).duration == timedelta(minutes=30)

    def test_explicit_range(self):
        tr = parse_time_range("2024-01-01 00:00 to 2024-01-01 06:00")
        assert tr == TimeRange(datetime(2024, 1, 1), datetime(2024, 1, 1, 6))

    def test_single_day(self):
        tr = parse_time_range("2024-01-15")
        assert tr == TimeRange(datetime(2024, 1, 15), datetime(2024, 1, 16))

    def test_inverted_range(self):
        with pytest.raises(TimeRangeError):
            parse_time_range("2024-01-02 to 2024-01-01")

    def test_garbage(self):
        with pytest.raises(TimeRangeError, match="Supported formats"):
            parse_time_range("sometime soon")
