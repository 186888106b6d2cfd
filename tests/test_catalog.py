"""
Tests for historian.catalog — loading and querying the tag catalog.

Run with: python -m pytest tests/test_catalog.py
"""

import pytest

from historian.catalog import TagCatalog, validate_tag
from historian.connection import SqliteConnector
from historian.errors import DatabaseConnectionError, SchemaMismatch, ValidationError
from historian.models import TagDescriptor

from conftest import CATALOG_ROWS, create_historian


class TestValidateTag:
    def test_valid(self, tags):
        assert validate_tag(tags[1]) == []

    def test_problems(self):
        tag = TagDescriptor(id=1, display_name=" ", table_number=0, column_position=100)
        problems = validate_tag(tag)
        assert len(problems) == 3


class TestTagCatalog:
    def test_load(self, connector):
        catalog = TagCatalog.load(connector)
        assert len(catalog) == len(CATALOG_ROWS)
        tag = catalog.require(2)
        assert tag.display_name == "Boiler Pressure"
        assert tag.table_name == "Trend00005Data"
        assert tag.column_name == "Item02"
        assert tag.group_name == "Boiler"
        assert tag.tag_number == "PI-102"

    def test_rejects_bad_rows(self, tmp_path):
        rows = CATALOG_ROWS + [
            (10, 1, "Boiler", "X-1", "Bad Table", 0, 1),
            (11, 1, "Boiler", "X-2", "Bad Pos", 5, 150),
            (12, 1, "Boiler", "X-3", "", 5, 4),
            (1, 1, "Boiler", "X-4", "Duplicate", 5, 5),
            ("abc", 1, "Boiler", "X-5", "Malformed", 5, 6),
        ]
        path = create_historian(tmp_path / "bad.db", catalog_rows=rows)
        catalog = TagCatalog.load(SqliteConnector(path))
        assert len(catalog) == len(CATALOG_ROWS)
        assert len(catalog.rejected) == 5
        assert all(isinstance(e, ValidationError) for e in catalog.rejected)
        assert catalog.require(1).display_name == "Boiler Temp"

    def test_missing_catalog_table(self, tmp_path):
        import sqlite3
        path = tmp_path / "empty.db"
        sqlite3.connect(str(path)).close()
        with pytest.raises(SchemaMismatch):
            TagCatalog.load(SqliteConnector(path))

    def test_unreachable_database(self, tmp_path):
        with pytest.raises(DatabaseConnectionError):
            TagCatalog.load(SqliteConnector(tmp_path / "nope.db"))

    def test_lookups(self, tags):
        catalog = TagCatalog(tags.values())
        assert 3 in catalog
        assert 99 not in catalog
        assert catalog.get(99) is None
        with pytest.raises(ValidationError):
            catalog.require(99)
        assert [t.id for t in catalog] == [1, 2, 3, 4]

    def test_by_table(self, tags):
        groups = TagCatalog(tags.values()).by_table()
        assert [t.id for t in groups[5]] == [1, 2, 4]
        assert [t.id for t in groups[7]] == [3]

    def test_search(self, tags):
        catalog = TagCatalog(tags.values())
        assert [t.id for t in catalog.search("boiler")] == [1, 2]
        assert [t.id for t in catalog.search("feedwater")] == [3, 4]
        assert [t.id for t in catalog.search("FI-201")] == [3]
        assert len(catalog.search("")) == 4
