"""
Tag catalog loaded from the historian's ``TrendTAGNoTable``.

The catalog is read once at startup and is read-only afterwards, so it can
be shared between fetch threads without locking. Rows that fail metadata
validation are rejected (logged and kept in ``rejected``), never loaded.
"""

import logging
from typing import Iterable, Iterator, Optional

from .connection import Connector
from .errors import ValidationError
from .models import TagDescriptor

logger = logging.getLogger("trendview")

CATALOG_TABLE = "TrendTAGNoTable"
CATALOG_QUERY = (
    "SELECT iIndex, GroupNo, GroupName, TAGNo, TAGName, TableNo, ItemPos "
    f"FROM {CATALOG_TABLE}"
)

# ItemPos is rendered as Item{:02d}
MAX_COLUMN_POSITION = 99


def validate_tag(tag: TagDescriptor) -> list[str]:
    """Return metadata problems for a descriptor (empty list if valid)."""
    problems = []
    label = tag.tag_number or str(tag.id)
    if not tag.display_name or not tag.display_name.strip():
        problems.append(f"Tag {label} has an empty name")
    if tag.table_number <= 0:
        problems.append(f"Tag {label} has invalid table number {tag.table_number}")
    if not 0 < tag.column_position <= MAX_COLUMN_POSITION:
        problems.append(
            f"Tag {label} has invalid item position {tag.column_position}"
        )
    return problems


def _row_to_descriptor(row: tuple) -> TagDescriptor:
    index, group_no, group_name, tag_no, tag_name, table_no, item_pos = row
    try:
        return TagDescriptor(
            id=int(index),
            display_name=str(tag_name or "").strip(),
            table_number=int(table_no),
            column_position=int(item_pos),
            group_number=int(group_no or 0),
            group_name=str(group_name or ""),
            tag_number=str(tag_no or "").strip(),
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed catalog row {row!r}: {e}") from e


class TagCatalog:
    """Read-only collection of TagDescriptors keyed by tag id."""

    def __init__(self, tags: Iterable[TagDescriptor] = ()):
        self._tags: dict[int, TagDescriptor] = {}
        self.rejected: list[ValidationError] = []
        for tag in tags:
            problems = validate_tag(tag)
            if tag.id in self._tags:
                problems.append(f"Duplicate tag id {tag.id}")
            if problems:
                self._reject(ValidationError("; ".join(problems), problems))
                continue
            self._tags[tag.id] = tag

    def _reject(self, error: ValidationError) -> None:
        logger.warning(f"[Catalog] Rejected tag metadata: {error}")
        self.rejected.append(error)

    @classmethod
    def load(cls, connector: Connector, timeout: float | None = None) -> "TagCatalog":
        """Load the catalog from ``TrendTAGNoTable``.

        Args:
            connector: Historian connector.
            timeout: Catalog query timeout in seconds (defaults to
                config.CONNECTION_TIMEOUT).

        Raises:
            DatabaseConnectionError, QueryTimeout, SchemaMismatch: From the query.
        """
        if timeout is None:
            import config
            timeout = config.CONNECTION_TIMEOUT

        with connector.connection() as conn:
            _, rows = connector.execute(conn, CATALOG_QUERY, timeout=timeout)

        descriptors = []
        malformed = []
        for row in rows:
            try:
                descriptors.append(_row_to_descriptor(row))
            except ValidationError as e:
                malformed.append(e)

        catalog = cls(descriptors)
        for error in malformed:
            catalog._reject(error)
        logger.info(
            f"[Catalog] Loaded {len(catalog)} tags "
            f"({len(catalog.rejected)} rejected) from {CATALOG_TABLE}"
        )
        return catalog

    def get(self, tag_id: int) -> Optional[TagDescriptor]:
        """Return the descriptor for ``tag_id`` or None."""
        return self._tags.get(tag_id)

    def require(self, tag_id: int) -> TagDescriptor:
        """Return the descriptor for ``tag_id``.

        Raises:
            ValidationError: If the tag id is not in the catalog.
        """
        tag = self._tags.get(tag_id)
        if tag is None:
            raise ValidationError(f"Unknown tag id {tag_id}")
        return tag

    def tags(self) -> list[TagDescriptor]:
        """All descriptors ordered by id."""
        return [self._tags[k] for k in sorted(self._tags)]

    def by_table(self) -> dict[int, list[TagDescriptor]]:
        """Descriptors grouped by storage table number."""
        groups: dict[int, list[TagDescriptor]] = {}
        for tag in self.tags():
            groups.setdefault(tag.table_number, []).append(tag)
        return groups

    def search(self, text: str) -> list[TagDescriptor]:
        """Case-insensitive substring match on tag name, tag number, or group name."""
        needle = text.lower().strip()
        if not needle:
            return self.tags()
        return [
            t for t in self.tags()
            if needle in t.display_name.lower()
            or needle in t.tag_number.lower()
            or needle in t.group_name.lower()
        ]

    def __contains__(self, tag_id: object) -> bool:
        return tag_id in self._tags

    def __iter__(self) -> Iterator[TagDescriptor]:
        return iter(self.tags())

    def __len__(self) -> int:
        return len(self._tags)
