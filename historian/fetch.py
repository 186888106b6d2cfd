"""
Fetcher — reads table-group query plans into per-tag point sequences.

Each QueryPlan is an independent unit of work run on a thread pool. A unit
holds a ConnectionGate permit for as long as its connection is open, runs
its query under an explicit timeout, and converts the rows into sparse
DataPoint sequences (NULL cells are skipped). One group's failure never
discards groups that already finished: the batch returns whatever
succeeded plus a per-group error list.
"""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from data_ops.validation import validate_points
from service.logging import tagged
from service.progress import NullProgressSink, ProgressSink, ProgressUpdate

from .connection import Connector
from .errors import (
    CancelledOperation,
    HistorianError,
    SchemaMismatch,
    ValidationError,
)
from .gate import ConnectionGate
from .models import TIMESTAMP_COLUMN, DataPoint, TagDescriptor
from .planner import QueryPlan

logger = logging.getLogger("trendview")


@dataclass
class FetchError:
    """Failure of one table group."""

    table_number: int
    tag_ids: list[int]
    error: HistorianError

    @property
    def kind(self) -> str:
        return type(self.error).__name__

    @property
    def message(self) -> str:
        return str(self.error)

    def to_dict(self) -> dict:
        return {
            "table_number": self.table_number,
            "tag_ids": self.tag_ids,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class FetchBatchResult:
    """Outcome of a batch of plans.

    Attributes:
        points: Tag id -> timestamp-ascending points, for every tag whose
            groups all succeeded. A tag read by several plans (several
            windows) has its sequences merged.
        errors: One FetchError per failed group.
        warnings: Validation warnings from successful groups.
        failed_tags: Ids of tags with at least one failed group.
        completed_plans: Number of groups that finished successfully.
    """

    points: dict[int, list[DataPoint]] = field(default_factory=dict)
    errors: list[FetchError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_tags: set[int] = field(default_factory=set)
    completed_plans: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


def _check_cancel(cancel_event: Optional[threading.Event], where: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledOperation(f"Fetch cancelled {where}")


def _column_points(
    index: pd.DatetimeIndex,
    raw: pd.Series,
    tag: TagDescriptor,
    decimals: Optional[int],
) -> list[DataPoint]:
    """Convert one value column into DataPoints, skipping NULL cells."""
    present = raw.map(lambda v: v is not None).to_numpy(dtype=bool)
    try:
        values = pd.to_numeric(raw[present], errors="raise").to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Tag {tag.display_name} has non-numeric values: {e}") from e
    if decimals is not None and decimals >= 0:
        values = np.round(values, decimals)
    timestamps = index[present].to_pydatetime()
    return [DataPoint(ts, float(v)) for ts, v in zip(timestamps, values)]


def rows_to_points(
    plan: QueryPlan,
    columns: list[str],
    rows: list[tuple],
    decimals: Optional[int] = None,
) -> tuple[dict[int, list[DataPoint]], list[str]]:
    """Split a table-group result set into per-tag point sequences.

    Returns:
        Tuple of (tag id -> points, validation warnings).

    Raises:
        SchemaMismatch: If a planned column is absent from the result set.
        ValidationError: If timestamps are missing/unparseable, values are
            non-numeric or non-finite, or timestamps are not strictly increasing.
    """
    missing = [c for c in [TIMESTAMP_COLUMN] + plan.columns if c not in columns]
    if missing:
        raise SchemaMismatch(f"{plan.table_name} result is missing columns {missing}")

    frame = pd.DataFrame(rows, columns=columns, dtype=object)
    try:
        index = pd.DatetimeIndex(pd.to_datetime(frame[TIMESTAMP_COLUMN]), name="time")
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{plan.table_name} has unparseable timestamps: {e}") from e
    if index.hasnans:
        raise ValidationError(f"{plan.table_name} has rows without a timestamp")

    result = {}
    warnings = []
    for tag in plan.tags:
        points = _column_points(index, frame[tag.column_name], tag, decimals)
        check = validate_points(points, tag.display_name)
        check.raise_for_errors()
        warnings.extend(check.warnings)
        result[tag.id] = points
    return result, warnings


def merge_points(*sequences: list[DataPoint]) -> list[DataPoint]:
    """Union several sequences, de-duplicated by timestamp (first wins), sorted ascending."""
    merged: dict = {}
    for seq in sequences:
        for point in seq:
            merged.setdefault(point.timestamp, point)
    return [merged[ts] for ts in sorted(merged)]


class Fetcher:
    """Executes query plans through a ConnectionGate.

    Args:
        connector: Historian connector.
        gate: Permit pool shared by every fetch in the process.
        command_timeout: Per-query timeout in seconds (default
            config.COMMAND_TIMEOUT).
        value_decimals: Round values to this many decimals (default
            config.VALUE_DECIMALS; negative disables rounding).
    """

    def __init__(
        self,
        connector: Connector,
        gate: ConnectionGate,
        command_timeout: float | None = None,
        value_decimals: int | None = None,
    ):
        import config

        self.connector = connector
        self.gate = gate
        self.command_timeout = (
            config.COMMAND_TIMEOUT if command_timeout is None else command_timeout
        )
        self.value_decimals = (
            config.VALUE_DECIMALS if value_decimals is None else value_decimals
        )

    def _run_plan(
        self,
        plan: QueryPlan,
        cancel_event: Optional[threading.Event],
    ) -> tuple[dict[int, list[DataPoint]], list[str]]:
        """Run one table group: permit -> connection -> query -> points."""
        _check_cancel(cancel_event, f"before {plan.table_name}")
        with self.gate.permit(cancel_event):
            with self.connector.connection() as conn:
                _check_cancel(cancel_event, f"before querying {plan.table_name}")
                if not self.connector.table_exists(
                    conn, plan.table_name, timeout=self.command_timeout
                ):
                    raise SchemaMismatch(f"Table {plan.table_name} does not exist")
                columns, rows = self.connector.execute(
                    conn, plan.sql, plan.params, timeout=self.command_timeout
                )
        return rows_to_points(plan, columns, rows, self.value_decimals)

    def fetch(
        self,
        plans: list[QueryPlan],
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressSink] = None,
    ) -> FetchBatchResult:
        """Run every plan concurrently (bounded by the gate) and collect results.

        Args:
            plans: Table-group plans, typically from TableBatchPlanner.
            cancel_event: Cooperative cancellation signal.
            progress: Sink receiving one update per finished group.

        Returns:
            FetchBatchResult with successful tags' points and per-group errors.

        Raises:
            CancelledOperation: If ``cancel_event`` is set before the batch
                finishes. Partial results are discarded.
        """
        progress = progress or NullProgressSink()
        result = FetchBatchResult()
        _check_cancel(cancel_event, "before start")
        if not plans:
            return result

        total = len(plans)
        done = 0
        cancelled = False
        per_tag: dict[int, list[list[DataPoint]]] = {}
        max_workers = min(total, self.gate.capacity)
        logger.debug(f"[Fetch] Running {total} table groups (max_workers={max_workers})")

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            # Workers log under the caller's request id
            futures = {
                pool.submit(
                    contextvars.copy_context().run, self._run_plan, plan, cancel_event
                ): plan
                for plan in plans
            }
            for future in as_completed(futures):
                plan = futures[future]
                if future.cancelled():
                    continue
                try:
                    tag_points, warnings = future.result()
                except CancelledOperation:
                    if not cancelled:
                        cancelled = True
                        for other in futures:
                            other.cancel()
                    continue
                except HistorianError as e:
                    done += 1
                    result.errors.append(FetchError(plan.table_number, plan.tag_ids, e))
                    result.failed_tags.update(plan.tag_ids)
                    logger.warning(
                        f"[Fetch] {plan.table_name} failed ({type(e).__name__}): {e}",
                        extra=tagged("fetch"),
                    )
                    progress.report(ProgressUpdate(
                        f"Failed to load {plan.table_name}: {e}", done / total * 100,
                    ))
                    continue

                done += 1
                result.completed_plans += 1
                result.warnings.extend(warnings)
                n_points = 0
                for tag in plan.tags:
                    points = tag_points[tag.id]
                    n_points += len(points)
                    per_tag.setdefault(tag.id, []).append(points)
                logger.debug(
                    f"[Fetch] {plan.table_name}: {len(plan.tags)} tags, {n_points} points",
                    extra=tagged("fetch"),
                )
                progress.report(ProgressUpdate(
                    f"Loaded {n_points} points from {plan.table_name}", done / total * 100,
                ))

        if cancelled or (cancel_event is not None and cancel_event.is_set()):
            logger.info(f"[Fetch] Batch cancelled after {done}/{total} groups")
            raise CancelledOperation(f"Fetch cancelled after {done}/{total} table groups")

        for tag_id, sequences in per_tag.items():
            if tag_id in result.failed_tags:
                continue
            points = sequences[0] if len(sequences) == 1 else merge_points(*sequences)
            result.points[tag_id] = points
        return result
