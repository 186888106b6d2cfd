"""
Tests for data_ops.validation — point, time-range, and tag-selection checks.

Run with: python -m pytest tests/test_validation.py
"""

from datetime import datetime, timedelta

import pytest

from data_ops.validation import (
    ValidationResult,
    validate_points,
    validate_tag_selection,
    validate_time_range,
)
from historian.errors import ValidationError
from historian.models import DataPoint, TagDescriptor

from conftest import T0, make_points


class TestValidationResult:
    def test_raise_for_errors(self):
        result = ValidationResult(errors=["a", "b"])
        with pytest.raises(ValidationError) as excinfo:
            result.raise_for_errors()
        assert excinfo.value.errors == ["a", "b"]

    def test_valid_does_not_raise(self):
        result = ValidationResult(warnings=["w"])
        assert result.is_valid
        result.raise_for_errors()

    def test_extend(self):
        merged = ValidationResult(errors=["a"]).extend(ValidationResult(warnings=["w"]))
        assert merged.errors == ["a"] and merged.warnings == ["w"]


class TestValidateTimeRange:
    def test_valid(self):
        assert validate_time_range(T0, T0 + timedelta(hours=6)).is_valid

    def test_inverted(self):
        assert not validate_time_range(T0, T0).is_valid

    def test_too_short(self):
        result = validate_time_range(T0, T0 + timedelta(milliseconds=500))
        assert "at least 1 second" in result.errors[0]

    def test_too_long(self):
        result = validate_time_range(T0, T0 + timedelta(days=400))
        assert not result.is_valid
        assert validate_time_range(T0, T0 + timedelta(days=400), max_days=500).is_valid


class TestValidatePoints:
    def test_empty_is_valid(self):
        assert validate_points([], "x").is_valid

    def test_regular_series(self):
        result = validate_points(make_points(100), "x")
        assert result.is_valid
        assert result.warnings == []

    def test_nan_and_inf(self):
        points = make_points(3, values=[1.0, float("nan"), float("inf")])
        result = validate_points(points, "Flow")
        assert not result.is_valid
        assert "2 NaN/Infinity" in result.errors[0]

    def test_duplicate_timestamp(self):
        points = [DataPoint(T0, 1.0), DataPoint(T0, 2.0)]
        assert not validate_points(points, "x").is_valid

    def test_large_gap_warning(self):
        points = make_points(20)
        points.append(DataPoint(points[-1].timestamp + timedelta(hours=1), 0.0))
        result = validate_points(points, "x")
        assert result.is_valid
        assert any("gap" in w for w in result.warnings)

    def test_large_series_warning(self):
        points = make_points(100_001)
        result = validate_points(points, "x")
        assert any("100001 points" in w for w in result.warnings)


class TestValidateTagSelection:
    def test_valid(self, tags):
        assert validate_tag_selection([tags[1], tags[3]], max_tags=8).is_valid

    def test_empty(self):
        assert not validate_tag_selection([], max_tags=8).is_valid

    def test_too_many(self, tags):
        result = validate_tag_selection(list(tags.values()), max_tags=2)
        assert "At most 2" in result.errors[0]

    def test_duplicates(self, tags):
        result = validate_tag_selection([tags[1], tags[1]], max_tags=8)
        assert any("Duplicate" in e for e in result.errors)

    def test_bad_metadata(self):
        bad = TagDescriptor(id=1, display_name="X", table_number=-1, column_position=1)
        assert not validate_tag_selection([bad], max_tags=8).is_valid

    def test_limit_from_config(self, tags):
        from unittest import mock
        with mock.patch("config.MAX_SELECTED_TAGS", 1):
            assert not validate_tag_selection([tags[1], tags[2]]).is_valid
