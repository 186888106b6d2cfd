"""
Value types shared across the historian access layer.

TagDescriptor describes where one tag lives in the historian schema and
DataPoint is a single timestamped sample. Both are frozen so they can be
shared between threads and handed out of the cache without copying.
"""

from dataclasses import dataclass
from datetime import datetime

import numpy as np
import pandas as pd

TABLE_NAME_FORMAT = "Trend{:05d}Data"
COLUMN_NAME_FORMAT = "Item{:02d}"
TIMESTAMP_COLUMN = "DateTime"


def table_name_for(table_number: int) -> str:
    """Physical storage table for a table number, e.g. 5 -> ``Trend00005Data``."""
    return TABLE_NAME_FORMAT.format(table_number)


def column_name_for(column_position: int) -> str:
    """Value column for an item position, e.g. 2 -> ``Item02``."""
    return COLUMN_NAME_FORMAT.format(column_position)


@dataclass(frozen=True)
class TagDescriptor:
    """Immutable catalog metadata for a single tag.

    Attributes:
        id: Catalog index (``iIndex``), unique per tag.
        display_name: Human-readable tag name (``TAGName``).
        table_number: Storage table number (``TableNo``).
        column_position: Item position within the table (``ItemPos``).
        group_number: Catalog group (``GroupNo``).
        group_name: Catalog group name (``GroupName``).
        tag_number: Plant tag number (``TAGNo``).
    """

    id: int
    display_name: str
    table_number: int
    column_position: int
    group_number: int = 0
    group_name: str = ""
    tag_number: str = ""

    @property
    def table_name(self) -> str:
        return table_name_for(self.table_number)

    @property
    def column_name(self) -> str:
        return column_name_for(self.column_position)


@dataclass(frozen=True)
class DataPoint:
    """A single sample: naive timestamp plus finite float value."""

    timestamp: datetime
    value: float


def points_to_frame(points: list[DataPoint]) -> pd.DataFrame:
    """Convert a point list into a DataFrame with a DatetimeIndex and a ``value`` column."""
    index = pd.DatetimeIndex([p.timestamp for p in points], name="time")
    return pd.DataFrame(
        {"value": np.array([p.value for p in points], dtype=np.float64)},
        index=index,
    )
