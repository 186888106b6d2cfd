"""
Data operations on fetched trend series.

Provides the time-range cache, extrema-preserving sampling, and validation
of points, time ranges, and tag selections.
"""
