"""Keep-only-records orchestrator (simulation / commit).

Flow per invocation, on one session:
  ensure DBCleanupResultsLog exists
  -> inspect schema (date / partition / row id / columns)
  -> capture CDC + Change Tracking state
  -> disable tracking
  -> count expired / retained            \
  -> partition coverage guard             |  timed: EstimatedDuration
  -> select buffer kind                   |
  -> transaction log space check          |
  -> batch mover (copy, truncate, back)  /
  -> write DBCleanupResultsLog row
  -> restore tracking

Simulation and commit execute the same steps; the only differences live in
the batch mover (truncate rolled back, buffers scanned instead of
reinserted), so simulation timings are representative of a real run.

Tracking is restored whenever it was disabled, including after a failure
or an interrupt.
A failed run writes no results log row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

import config
from cleanup import change_tracking
from cleanup.batch_mover import BatchMover, MoveResult
from cleanup.buffer_strategy import BufferKind, select_buffer_kind
from cleanup.counter import RetentionCounts, count_retention, count_rows
from cleanup.errors import TrackingToggleError
from cleanup.retention_filter import RetentionFilter
from cleanup.session import Stopwatch
from identifiers import validate_identifier
from observability.run_log import RunLogRow, ensure_results_log_table, write_run_log
from orchestration.guards import check_log_space, check_partition_coverage
from schema.inspector import TableSchema, inspect_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeepOnlyRequest:
    """Parameters of one invocation."""

    table: str
    legal_entities: str | tuple[str, ...]
    keep_from_date: date
    simulation: bool
    threshold: int = config.CLEANUP_THRESHOLD
    batch_size: int = config.CLEANUP_BATCH_SIZE
    schema: str = config.DEFAULT_SCHEMA
    force: bool = False

    def __post_init__(self) -> None:
        validate_identifier(self.schema)
        validate_identifier(self.table)
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {self.threshold}")

    @property
    def mode(self) -> str:
        return "SIMULATION" if self.simulation else "COMMIT"


@dataclass
class KeepOnlyResult:
    """Everything a completed run produced."""

    table_schema: TableSchema
    retention_filter: RetentionFilter
    counts: RetentionCounts
    buffer_kind: BufferKind
    move: MoveResult
    log_row: RunLogRow
    tracking: change_tracking.TrackingState


def run_keep_only(conn, request: KeepOnlyRequest) -> KeepOnlyResult:
    """Run one keep-only-records invocation on ``conn``.

    Args:
        conn: pyodbc connection to the target database (autocommit=True).
            The whole run uses this one session.
        request: Run parameters.

    Returns:
        KeepOnlyResult.

    Raises:
        ValueError: Invalid parameters (before any SQL).
        SchemaError: Missing timestamp / partition / row id column.
        TrackingToggleError: Tracking could not be disabled or restored.
        GuardError: Commit would drop rows outside the filter (no --force).
        BatchError: Copy / truncate / reinsert failed.
    """
    retention_filter = RetentionFilter.build(request.legal_entities, request.keep_from_date)
    logger.info(
        "[%s] Keep only %s rows of %s.%s from %s (threshold=%d, batch size=%d)",
        request.mode, retention_filter.legal_entity_label, request.schema,
        request.table, retention_filter.cutoff_date, request.threshold,
        request.batch_size,
    )

    ensure_results_log_table(conn)
    table_schema = inspect_table(conn, request.schema, request.table)

    tracking = change_tracking.capture_state(conn, table_schema)
    change_tracking.disable(conn, table_schema, tracking)

    try:
        run_timestamp = datetime.now()
        with Stopwatch() as total:
            counts = count_retention(conn, table_schema, retention_filter)
            total_rows = count_rows(conn, table_schema)
            check_partition_coverage(
                table_schema, total_rows, counts,
                simulation=request.simulation, force=request.force,
            )

            buffer_kind = select_buffer_kind(counts.retained, request.threshold)
            logger.info(
                "Buffer kind for %d retained rows (threshold %d): %s",
                counts.retained, request.threshold, buffer_kind.name,
            )

            if counts.retained > 0:
                check_log_space(
                    conn, table_schema, min(request.batch_size, counts.retained),
                )

            mover = BatchMover(
                conn,
                table_schema,
                retention_filter,
                buffer_kind=buffer_kind,
                simulation=request.simulation,
                batch_size=request.batch_size,
            )
            move = mover.run(counts.retained)

        log_row = RunLogRow(
            table_name=table_schema.table,
            legal_entity=retention_filter.legal_entity_label,
            keep_from_date=retention_filter.cutoff_date,
            records_deleted=counts.expired,
            records_saved=counts.retained,
            duration_ms=total.elapsed_ms,
            run_timestamp=run_timestamp,
        )
        write_run_log(conn, log_row)
    except BaseException as exc:
        _restore_after_failure(conn, table_schema, tracking, exc)
        raise

    change_tracking.restore(conn, table_schema, tracking)

    logger.info(
        "[%s] %s done: expired=%d, retained=%d, duration=%d ms "
        "(copy %d ms, truncate %d ms, copy back %d ms)",
        request.mode, table_schema.display_name, counts.expired, counts.retained,
        log_row.duration_ms, move.timings.copy_ms, move.timings.truncate_ms,
        move.timings.reinsert_ms,
    )
    return KeepOnlyResult(
        table_schema=table_schema,
        retention_filter=retention_filter,
        counts=counts,
        buffer_kind=buffer_kind,
        move=move,
        log_row=log_row,
        tracking=tracking,
    )


def _restore_after_failure(
    conn,
    table_schema: TableSchema,
    tracking: change_tracking.TrackingState,
    error: BaseException,
) -> None:
    """Restore tracking after a failed run; a restore failure supersedes ``error``."""
    if not tracking.any_enabled:
        return
    logger.error(
        "Run on %s failed (%s); restoring tracking state",
        table_schema.display_name, type(error).__name__,
    )
    try:
        change_tracking.restore(conn, table_schema, tracking)
    except TrackingToggleError as restore_error:
        raise TrackingToggleError(
            f"{restore_error} (after run failure: {error})"
        ) from error
