"""
Tests for data_ops.sampling — extrema-preserving downsampling.

Run with: python -m pytest tests/test_sampling.py
"""

from datetime import timedelta
from unittest import mock

import numpy as np
import pytest

from data_ops.sampling import Sampler, sample, segment_count, segment_slices
from historian.models import TagDescriptor

from conftest import T0, make_points


def _random_walk(n, seed=42):
    rng = np.random.default_rng(seed)
    return make_points(n, values=np.cumsum(rng.normal(size=n)))


class TestSegmentation:
    def test_segment_count(self):
        assert segment_count(10) == 4
        assert segment_count(1000) == 499
        assert segment_count(3) == 0
        assert segment_count(2) == 0

    def test_slices_cover_interior_contiguously(self):
        slices = segment_slices(1000, 10)
        assert slices[0].start == 1
        assert slices[-1].stop == 999
        for a, b in zip(slices, slices[1:]):
            assert a.stop == b.start

    def test_slice_sizes_differ_by_at_most_one(self):
        sizes = [s.stop - s.start for s in segment_slices(10_007, 100)]
        assert max(sizes) - min(sizes) <= 1

    def test_no_slices_when_short_enough(self):
        assert segment_slices(10, 10) == []
        assert segment_slices(5, 100) == []


class TestSample:
    def test_returns_input_unchanged_when_short(self):
        points = make_points(50)
        assert sample(points, 50) is points
        assert sample(points, 1000) is points

    def test_empty_input(self):
        points = []
        assert sample(points, 10) is points

    def test_rejects_max_count_below_two(self):
        with pytest.raises(ValueError):
            sample(make_points(10), 1)

    def test_endpoints_only_for_tiny_targets(self):
        points = make_points(100)
        for m in (2, 3):
            out = sample(points, m)
            assert out == [points[0], points[-1]]

    def test_random_walk_properties(self):
        points = _random_walk(100_000)
        out = sample(points, 1000)

        assert len(out) <= 1000
        assert out[0] is points[0]
        assert out[-1] is points[-1]
        times = [p.timestamp for p in out]
        assert all(a < b for a, b in zip(times, times[1:]))

        kept = {p.timestamp for p in out}
        values = np.array([p.value for p in points])
        for seg in segment_slices(len(points), 1000):
            chunk = values[seg]
            assert points[seg.start + int(np.argmin(chunk))].timestamp in kept
            assert points[seg.start + int(np.argmax(chunk))].timestamp in kept

    def test_global_extremes_survive(self):
        values = np.zeros(5000)
        values[1234] = 50.0
        values[4321] = -50.0
        points = make_points(5000, values=values)
        out = sample(points, 20)
        out_values = [p.value for p in out]
        assert 50.0 in out_values
        assert -50.0 in out_values

    def test_ties_resolve_to_earliest(self):
        points = make_points(100, values=[1.0] * 100)
        out = sample(points, 4)
        # One segment covering 1..98; constant values -> first index for min and max
        assert [p.timestamp for p in out] == [
            points[0].timestamp, points[1].timestamp, points[99].timestamp,
        ]

    def test_does_not_mutate_input(self):
        points = _random_walk(500)
        snapshot = list(points)
        sample(points, 50)
        assert points == snapshot


class TestEndToEndRamp:
    """Tag on table 5, position 2: 1000 one-second points valued 1.0 .. 1000.0."""

    def test_ramp_reduced_to_ten(self):
        tag = TagDescriptor(id=1, display_name="Ramp", table_number=5, column_position=2)
        assert tag.table_name == "Trend00005Data"
        assert tag.column_name == "Item02"

        points = make_points(1000)
        out = sample(points, 10)

        assert len(out) == 10
        assert out[0].timestamp == T0 and out[0].value == 1.0
        assert out[-1].timestamp == T0 + timedelta(seconds=999)
        assert out[-1].value == 1000.0
        # A monotone ramp: each segment's min is its first point, max its last
        values = [p.value for p in out]
        for seg in segment_slices(1000, 10):
            assert float(seg.start + 1) in values
            assert float(seg.stop) in values


class TestSampler:
    def test_default_target_from_config(self):
        with mock.patch("config.MAX_DATA_POINTS", 25):
            sampler = Sampler()
        assert sampler.max_count == 25

    def test_override_per_call(self):
        sampler = Sampler(max_count=100)
        points = make_points(1000)
        assert len(sampler.sample(points)) <= 100
        assert len(sampler.sample(points, 10)) == 10

    def test_invalid_default(self):
        with pytest.raises(ValueError):
            Sampler(max_count=1)
