"""Orphaned buffer table listing and removal (operator runbook).

A run re-uses buffer indexes 1..N and drops each one before re-creating it,
so a re-run cleans up whatever it overwrites. Buffers at higher indexes from
an earlier, larger attempt are not touched automatically: after a failure in
the reinsert phase they may be the only copy of rows that never made it back
into the table. This module lets an operator inspect and, once reconciled,
drop them:

    python3 main_keep_only.py --table CUSTTRANS --list-orphans
    python3 main_keep_only.py --table CUSTTRANS --drop-orphans

Global temp (##) buffers only exist while the session that created them is
alive, so in practice only DURABLE buffers are found here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cleanup.buffer_strategy import BufferKind, buffer_name, buffer_name_pattern

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrphanBuffer:
    """A buffer table left by an earlier run."""

    kind: BufferKind
    index: int
    name: str  # quoted, usable in SQL
    row_count: int | None = None


def find_orphaned_buffers(conn, schema: str, table: str) -> list[OrphanBuffer]:
    """List buffer tables for ``schema.table`` in the target database and tempdb.

    Returns:
        Orphans ordered by kind then index.
    """
    found: list[OrphanBuffer] = []

    durable_re = buffer_name_pattern(BufferKind.DURABLE, schema, table)
    temp_re = buffer_name_pattern(BufferKind.TEMPORARY, schema, table)

    cursor = conn.cursor()
    try:
        cursor.execute(
            "SELECT t.name, SUM(p.row_count) "
            "FROM sys.tables t "
            "LEFT JOIN sys.dm_db_partition_stats p "
            "  ON p.object_id = t.object_id AND p.index_id IN (0, 1) "
            "WHERE t.schema_id = SCHEMA_ID(?) AND t.name LIKE ? "
            "GROUP BY t.name",
            schema, f"{table}[_]{BufferKind.DURABLE.suffix}%",
        )
        for name, rows in cursor.fetchall():
            match = durable_re.match(name)
            if match:
                index = int(match.group(1))
                found.append(OrphanBuffer(
                    BufferKind.DURABLE, index,
                    buffer_name(BufferKind.DURABLE, schema, table, index),
                    int(rows) if rows is not None else None,
                ))

        cursor.execute(
            "SELECT name FROM tempdb.sys.tables WHERE name LIKE ?",
            f"##{schema}[_]{table}[_]{BufferKind.TEMPORARY.suffix}%",
        )
        for (name,) in cursor.fetchall():
            match = temp_re.match(name)
            if match:
                index = int(match.group(1))
                found.append(OrphanBuffer(
                    BufferKind.TEMPORARY, index,
                    buffer_name(BufferKind.TEMPORARY, schema, table, index),
                ))
    finally:
        cursor.close()

    found.sort(key=lambda o: (o.kind.name, o.index))
    return found


def drop_orphaned_buffers(conn, schema: str, table: str) -> int:
    """Drop every buffer table found for ``schema.table``.

    Only run after confirming the buffers' rows are back in the table (or
    are not wanted): dropping them is irreversible.

    Returns:
        Number of buffer tables dropped.
    """
    orphans = find_orphaned_buffers(conn, schema, table)
    dropped = 0
    for orphan in orphans:
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(f"DROP TABLE IF EXISTS {orphan.name}")
            finally:
                cursor.close()
            logger.info(
                "Dropped orphaned buffer table %s (%s rows)",
                orphan.name, "?" if orphan.row_count is None else orphan.row_count,
            )
            dropped += 1
        except Exception:
            logger.warning("Failed to drop buffer table %s", orphan.name, exc_info=True)

    if dropped:
        logger.info("Dropped %d orphaned buffer table(s) for %s.%s", dropped, schema, table)
    else:
        logger.info("No orphaned buffer tables dropped for %s.%s", schema, table)
    return dropped
