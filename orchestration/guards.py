"""Pre-flight guards for keep-only-records runs.

G-1: Partition coverage guard. TRUNCATE removes every row of the table, but
only rows matching the retained predicate are copied back. Rows of legal
entities not named in the run, and rows whose timestamp is NULL, are neither
expired nor retained and would be lost. In commit mode the run is blocked
when any such row exists unless --force is given; in simulation mode the
guard only warns.

G-2: Log space check. Each reinsert batch is one transaction. Warns when the
free transaction log looks too small for one batch. Best effort, never
blocks.
"""

from __future__ import annotations

import logging

import config
from cleanup.counter import RetentionCounts
from cleanup.errors import GuardError
from schema.inspector import TableSchema

logger = logging.getLogger(__name__)


def check_partition_coverage(
    table_schema: TableSchema,
    total_rows: int,
    counts: RetentionCounts,
    *,
    simulation: bool,
    force: bool = False,
) -> int:
    """G-1: Verify every row of the table is either expired or retained.

    Args:
        table_schema: Target table.
        total_rows: Exact row count of the whole table.
        counts: Expired/retained counts for the run's filter.
        simulation: Simulation runs only warn.
        force: Commit runs proceed with a warning instead of failing.

    Returns:
        Number of rows outside the filter (lost by a commit run).

    Raises:
        GuardError: Commit mode, not forced, and rows would be lost.
    """
    uncovered = total_rows - counts.in_scope
    if uncovered <= 0:
        return 0

    message = (
        f"{table_schema.display_name}: {uncovered} of {total_rows} rows belong to "
        f"other legal entities or have a NULL {table_schema.date_column}; "
        f"they are not copied back after the truncate"
    )
    if simulation:
        logger.warning("COVERAGE GUARD (simulation): %s", message)
    elif force:
        logger.warning("COVERAGE GUARD overridden by --force: %s", message)
    else:
        logger.error("COVERAGE GUARD: %s. Use --force to override.", message)
        raise GuardError(message)
    return uncovered


def check_log_space(
    conn,
    table_schema: TableSchema,
    rows_per_batch: int,
) -> float | None:
    """G-2: Warn if free log space looks insufficient for one reinsert batch.

    Average row size comes from sys.dm_db_partition_stats (heap or clustered
    index only). Free log space from sys.dm_db_log_space_usage.

    Returns:
        Estimated GB of log needed per batch, or None if it could not be
        estimated.
    """
    try:
        cursor = conn.cursor()
        try:
            cursor.execute(
                "SELECT SUM(used_page_count) * 8192.0 / NULLIF(SUM(row_count), 0) "
                "FROM sys.dm_db_partition_stats "
                "WHERE object_id = OBJECT_ID(?) AND index_id IN (0, 1)",
                table_schema.qualified_name,
            )
            row = cursor.fetchone()
            avg_row_bytes = float(row[0]) if row and row[0] is not None else None
            if avg_row_bytes is None:
                return None

            cursor.execute(
                "SELECT total_log_size_in_bytes / 1073741824.0, "
                "       used_log_space_in_bytes / 1073741824.0 "
                "FROM sys.dm_db_log_space_usage"
            )
            log_row = cursor.fetchone()
        finally:
            cursor.close()
    except Exception:
        logger.warning(
            "Could not check log space for %s; continuing",
            table_schema.display_name, exc_info=True,
        )
        return None

    estimated_gb = rows_per_batch * avg_row_bytes / (1024 ** 3)
    if not log_row:
        return estimated_gb

    total_gb, used_gb = float(log_row[0]), float(log_row[1])
    available_gb = total_gb - used_gb
    if available_gb < estimated_gb * config.LOG_SPACE_HEADROOM:
        logger.warning(
            "Transaction log space may be insufficient for %s. Available: %.1f GB, "
            "estimated per batch: %.1f GB (total: %.1f GB, used: %.1f GB). "
            "Lower --batch-size or grow the log before committing.",
            table_schema.display_name, available_gb, estimated_gb, total_gb, used_gb,
        )
    else:
        logger.debug(
            "Log space check for %s: available %.1f GB, estimated per batch %.1f GB",
            table_schema.display_name, available_gb, estimated_gb,
        )
    return estimated_gb
