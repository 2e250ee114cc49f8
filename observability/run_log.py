"""Run logger -> DBCleanupResultsLog.

Writes exactly one row per successful keep-only-records invocation (both
modes). Append only: rows are never updated or deleted here. The table is
created on first use.

Usage:
    ensure_results_log_table(conn)
    write_run_log(conn, RunLogRow(...))
    rows = fetch_run_logs(conn, "CUSTTRANS", "usmf,demf", date(2023, 1, 1))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

import config
from identifiers import quote_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunLogRow:
    """One DBCleanupResultsLog row."""

    table_name: str
    legal_entity: str
    keep_from_date: date
    records_deleted: int
    records_saved: int
    duration_ms: int
    run_timestamp: datetime


def _log_table(schema: str | None = None) -> str:
    return quote_table(schema or config.DEFAULT_SCHEMA, config.RESULTS_LOG_TABLE)


def ensure_results_log_table(conn, schema: str | None = None) -> bool:
    """Create DBCleanupResultsLog if it does not exist.

    Returns:
        True if the table was created.
    """
    log_table = _log_table(schema)
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT OBJECT_ID(?, 'U')", log_table)
        row = cursor.fetchone()
        if row is not None and row[0] is not None:
            return False

        cursor.execute(f"""
            CREATE TABLE {log_table} (
                TableName NVARCHAR(256) NOT NULL,
                LegalEntity NVARCHAR(MAX) NOT NULL,
                KeepFromDate NVARCHAR(120) NOT NULL,
                NbRecordsDeleted BIGINT NOT NULL,
                NbRecordsSaved BIGINT NOT NULL,
                EstimatedDuration BIGINT NOT NULL,
                RunTimestamp DATETIME2(3) NOT NULL
            )
        """)
    finally:
        cursor.close()
    logger.info("Created results log table %s", log_table)
    return True


def write_run_log(conn, row: RunLogRow, schema: str | None = None) -> None:
    """Append one row. Errors propagate: the row is the audit record of the run."""
    cursor = conn.cursor()
    try:
        cursor.execute(
            f"INSERT INTO {_log_table(schema)} ("
            "TableName, LegalEntity, KeepFromDate, NbRecordsDeleted, "
            "NbRecordsSaved, EstimatedDuration, RunTimestamp"
            ") VALUES (?, ?, ?, ?, ?, ?, ?)",
            row.table_name,
            row.legal_entity,
            row.keep_from_date.isoformat(),
            row.records_deleted,
            row.records_saved,
            row.duration_ms,
            row.run_timestamp,
        )
    finally:
        cursor.close()
    logger.info(
        "Results logged for %s [%s] keep from %s: deleted=%d, saved=%d, duration=%d ms",
        row.table_name, row.legal_entity, row.keep_from_date,
        row.records_deleted, row.records_saved, row.duration_ms,
    )


def fetch_run_logs(
    conn,
    table_name: str,
    legal_entity: str,
    keep_from_date: date,
    schema: str | None = None,
) -> list[RunLogRow]:
    """Return log rows for (table, legal entities, cutoff), oldest first."""
    cursor = conn.cursor()
    try:
        cursor.execute(
            "SELECT TableName, LegalEntity, KeepFromDate, NbRecordsDeleted, "
            "NbRecordsSaved, EstimatedDuration, RunTimestamp "
            f"FROM {_log_table(schema)} "
            "WHERE TableName = ? AND LegalEntity = ? AND KeepFromDate = ? "
            "ORDER BY RunTimestamp",
            table_name, legal_entity, keep_from_date.isoformat(),
        )
        rows = cursor.fetchall()
    finally:
        cursor.close()

    return [
        RunLogRow(
            table_name=r[0],
            legal_entity=r[1],
            keep_from_date=_as_date(r[2]),
            records_deleted=int(r[3]),
            records_saved=int(r[4]),
            duration_ms=int(r[5]),
            run_timestamp=r[6],
        )
        for r in rows
    ]


def _as_date(value) -> date:
    # KeepFromDate is NVARCHAR(120); pre-existing log tables may use DATE.
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])
