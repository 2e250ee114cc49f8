"""Expired / retained row counts for a retention filter.

Counts drive buffer sizing, the number of batches, the post-copy check, and
the values written to DBCleanupResultsLog. Predicates come from
RetentionFilter.predicate(), the same builder the batch mover uses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cleanup.retention_filter import RetentionFilter
from schema.inspector import TableSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionCounts:
    """Row counts under one retention filter."""

    expired: int
    retained: int

    @property
    def in_scope(self) -> int:
        """Rows of the listed legal entities with a non-NULL timestamp."""
        return self.expired + self.retained


def count_retention(
    conn,
    table_schema: TableSchema,
    retention_filter: RetentionFilter,
) -> RetentionCounts:
    """Count expired and retained rows.

    Returns:
        RetentionCounts(expired, retained).
    """
    expired = _count_where(conn, table_schema, retention_filter, expired=True)
    retained = _count_where(conn, table_schema, retention_filter, expired=False)

    logger.info(
        "%s [%s] cutoff %s: expired=%d, retained=%d",
        table_schema.display_name, retention_filter.legal_entity_label,
        retention_filter.cutoff_date, expired, retained,
    )
    return RetentionCounts(expired=expired, retained=retained)


def count_rows(conn, table_schema: TableSchema) -> int:
    """Exact total row count of the table (all partitions)."""
    cursor = conn.cursor()
    try:
        cursor.execute(f"SELECT COUNT_BIG(*) FROM {table_schema.qualified_name}")
        row = cursor.fetchone()
    finally:
        cursor.close()
    return int(row[0]) if row and row[0] is not None else 0


def _count_where(
    conn,
    table_schema: TableSchema,
    retention_filter: RetentionFilter,
    *,
    expired: bool,
) -> int:
    clause, params = retention_filter.predicate(
        table_schema.partition_column,
        table_schema.date_column,
        expired=expired,
    )
    cursor = conn.cursor()
    try:
        cursor.execute(
            f"SELECT COUNT_BIG(*) FROM {table_schema.qualified_name} WHERE {clause}",
            *params,
        )
        row = cursor.fetchone()
    finally:
        cursor.close()
    return int(row[0]) if row and row[0] is not None else 0
