"""
Extrema-preserving downsampling for display.

Fixed-stride sampling can step over short spikes. Instead, the interior of
the sequence is split into contiguous segments and each segment contributes
both its minimum-value and its maximum-value point, so every excursion
stays visible. The first and last points are always kept.

The segment count is chosen so the output never exceeds ``max_count``:
two extremes per segment plus the two endpoints.
"""

import numpy as np

from historian.models import DataPoint


def segment_count(max_count: int) -> int:
    """Number of interior segments used for a target of ``max_count`` points.

    Returns 0 when ``max_count`` leaves no room beyond the endpoints.
    """
    return max(0, (max_count - 2) // 2)


def segment_slices(n: int, max_count: int) -> list[slice]:
    """Contiguous, near-equal slices of the interior indices ``1 .. n-2``.

    Segment sizes differ by at most one. Empty when ``n <= max_count`` (no
    sampling needed) or when there are no interior points.
    """
    if n <= max_count or n <= 2:
        return []
    count = min(segment_count(max_count), n - 2)
    if count == 0:
        return []
    bounds = np.linspace(1, n - 1, count + 1).round().astype(int)
    return [slice(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


def sample(points: list[DataPoint], max_count: int) -> list[DataPoint]:
    """Reduce ``points`` to at most ``max_count`` while preserving extremes.

    Args:
        points: Timestamp-ascending sequence.
        max_count: Target upper bound on the output length (>= 2).

    Returns:
        ``points`` itself if it is already short enough; otherwise a new
        timestamp-ascending list holding the first point, the last point,
        and each segment's min-value and max-value point (ties resolved to
        the earlier timestamp; a point that is both is emitted once).

    Raises:
        ValueError: If ``max_count < 2``.
    """
    if max_count < 2:
        raise ValueError(f"max_count must be >= 2, got {max_count}")
    n = len(points)
    if n <= max_count:
        return points

    values = np.fromiter((p.value for p in points), dtype=np.float64, count=n)
    keep = {0, n - 1}
    for seg in segment_slices(n, max_count):
        chunk = values[seg]
        # argmin/argmax return the first occurrence -> earliest timestamp on ties
        keep.add(seg.start + int(np.argmin(chunk)))
        keep.add(seg.start + int(np.argmax(chunk)))

    # Indices follow timestamp order because the input is ascending
    return [points[i] for i in sorted(keep)]


class Sampler:
    """Sampler bound to a default target count.

    Args:
        max_count: Default target (config.MAX_DATA_POINTS when None).
    """

    def __init__(self, max_count: int | None = None):
        if max_count is None:
            import config
            max_count = config.MAX_DATA_POINTS
        if max_count < 2:
            raise ValueError(f"max_count must be >= 2, got {max_count}")
        self.max_count = max_count

    def sample(self, points: list[DataPoint], max_count: int | None = None) -> list[DataPoint]:
        return sample(points, self.max_count if max_count is None else max_count)
