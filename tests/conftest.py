"""Shared fixtures: temporary sqlite historians laid out like the production schema."""

import sqlite3
from datetime import datetime, timedelta

import pytest

from historian.connection import SqliteConnector
from historian.models import DataPoint, TagDescriptor, column_name_for, table_name_for

T0 = datetime(2024, 1, 1, 0, 0, 0)

# (iIndex, GroupNo, GroupName, TAGNo, TAGName, TableNo, ItemPos)
CATALOG_ROWS = [
    (1, 1, "Boiler", "TI-101", "Boiler Temp", 5, 1),
    (2, 1, "Boiler", "PI-102", "Boiler Pressure", 5, 2),
    (3, 2, "Feedwater", "FI-201", "Feed Flow", 7, 1),
    (4, 2, "Feedwater", "LI-202", "Drum Level", 5, 3),
]


def make_points(n: int, start: datetime = T0, step: timedelta = timedelta(seconds=1),
                values=None) -> list[DataPoint]:
    """n points at ``step`` intervals; values default to 1.0 .. n."""
    if values is None:
        values = [float(i + 1) for i in range(n)]
    return [DataPoint(start + i * step, float(v)) for i, v in zip(range(n), values)]


def create_historian(path, catalog_rows=CATALOG_ROWS, tables=None):
    """Create a historian database file.

    Args:
        path: sqlite file to create.
        catalog_rows: Rows for TrendTAGNoTable.
        tables: Table number -> list of rows ``(datetime, item01, item02, ...)``.
            Columns Item01..ItemNN are created from the widest row.
    """
    conn = sqlite3.connect(str(path), detect_types=sqlite3.PARSE_DECLTYPES)
    conn.execute(
        "CREATE TABLE TrendTAGNoTable (iIndex INTEGER, GroupNo INTEGER, GroupName TEXT, "
        "TAGNo TEXT, TAGName TEXT, TableNo INTEGER, ItemPos INTEGER)"
    )
    conn.executemany("INSERT INTO TrendTAGNoTable VALUES (?, ?, ?, ?, ?, ?, ?)", catalog_rows)
    for table_number, rows in (tables or {}).items():
        width = max((len(r) - 1 for r in rows), default=1)
        items = [column_name_for(i) for i in range(1, width + 1)]
        cols = ", ".join(f"{c} REAL" for c in items)
        name = table_name_for(table_number)
        conn.execute(f"CREATE TABLE {name} (DateTime DATETIME, {cols})")
        placeholders = ", ".join("?" for _ in range(width + 1))
        conn.executemany(f"INSERT INTO {name} VALUES ({placeholders})", rows)
    conn.commit()
    conn.close()
    return path


def default_tables(n: int = 60) -> dict:
    """Table 5: three items over n seconds (Item03 NULL on odd rows). Table 7: one item."""
    table5 = []
    table7 = []
    for i in range(n):
        ts = T0 + timedelta(seconds=i)
        table5.append((ts, float(i), float(i) * 10, float(i) if i % 2 == 0 else None))
        table7.append((ts, 100.0 + i))
    return {5: table5, 7: table7}


@pytest.fixture
def historian_path(tmp_path):
    """Path to a populated historian (60 s of data in tables 5 and 7)."""
    return create_historian(tmp_path / "trend.db", tables=default_tables())


@pytest.fixture
def connector(historian_path):
    return SqliteConnector(historian_path)


@pytest.fixture
def tags():
    """TagDescriptors matching CATALOG_ROWS, keyed by id."""
    return {
        row[0]: TagDescriptor(
            id=row[0], display_name=row[4], table_number=row[5], column_position=row[6],
            group_number=row[1], group_name=row[2], tag_number=row[3],
        )
        for row in CATALOG_ROWS
    }
