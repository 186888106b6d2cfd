"""
Query planning: one SELECT per storage table instead of one per tag.

Each tag lives in a fixed ``ItemNN`` column of one ``TrendNNNNNData``
table, so reading several columns of the same table in a single query is
much cheaper than issuing a query per tag.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from .errors import ValidationError
from .models import TIMESTAMP_COLUMN, TagDescriptor, table_name_for


@dataclass(frozen=True)
class QueryPlan:
    """A single table-group query.

    Attributes:
        table_number: Storage table number shared by every tag in the group.
        table_name: Physical table name (``TrendNNNNNData``).
        tags: Tags read by this query, ordered by column position.
        sql: SELECT statement with qmark placeholders.
        params: Bound (start, end) datetimes.
        start: Window start.
        end: Window end.
    """

    table_number: int
    table_name: str
    tags: tuple[TagDescriptor, ...]
    sql: str
    params: tuple
    start: datetime
    end: datetime

    @property
    def tag_ids(self) -> list[int]:
        return [t.id for t in self.tags]

    @property
    def columns(self) -> list[str]:
        return list(dict.fromkeys(t.column_name for t in self.tags))


def build_query(
    table_name: str,
    columns: list[str],
    include_start: bool = True,
    include_end: bool = True,
) -> str:
    """Build the value query for one table.

    Identifiers are derived from integer metadata (``TrendNNNNNData`` /
    ``ItemNN``), never from free text; window bounds are placeholders.
    """
    lower = ">=" if include_start else ">"
    upper = "<=" if include_end else "<"
    select = ", ".join([TIMESTAMP_COLUMN] + columns)
    return (
        f"SELECT {select} FROM {table_name} "
        f"WHERE {TIMESTAMP_COLUMN} {lower} ? AND {TIMESTAMP_COLUMN} {upper} ? "
        f"ORDER BY {TIMESTAMP_COLUMN}"
    )


class TableBatchPlanner:
    """Groups requested tags by storage table and emits one QueryPlan per table."""

    def plan(
        self,
        tags: Iterable[TagDescriptor],
        start: datetime,
        end: datetime,
        include_start: bool = True,
        include_end: bool = True,
    ) -> list[QueryPlan]:
        """Plan the queries needed to read ``tags`` over ``[start, end]``.

        Args:
            tags: Tags to read. Duplicate ids are read once.
            start: Window start.
            end: Window end (must be after ``start``).
            include_start: Use ``>=`` (True) or ``>`` (False) on the start bound.
            include_end: Use ``<=`` (True) or ``<`` (False) on the end bound.

        Returns:
            Plans ordered by table number; tags in a plan ordered by column
            position.

        Raises:
            ValidationError: If ``start >= end``.
        """
        if start >= end:
            raise ValidationError(
                f"Start ({start.isoformat()}) must be before end ({end.isoformat()})"
            )

        groups: dict[int, dict[int, TagDescriptor]] = {}
        for tag in tags:
            groups.setdefault(tag.table_number, {})[tag.id] = tag

        plans = []
        for table_number in sorted(groups):
            members = tuple(sorted(
                groups[table_number].values(),
                key=lambda t: (t.column_position, t.id),
            ))
            table_name = table_name_for(table_number)
            # Two tags mapped onto the same column share one select item
            columns = list(dict.fromkeys(t.column_name for t in members))
            plans.append(QueryPlan(
                table_number=table_number,
                table_name=table_name,
                tags=members,
                sql=build_query(table_name, columns, include_start, include_end),
                params=(start, end),
                start=start,
                end=end,
            ))
        return plans
