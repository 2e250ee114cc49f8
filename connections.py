"""SQL Server connections for the cleanup run.

A cleanup run uses ONE pyodbc connection end to end: ## buffer tables are
visible only while the session that created them is alive, and the
copy/truncate/reinsert transactions are scoped to that session. The table
lock (orchestration/table_lock.py) holds its own separate connection.

Connections are opened with autocommit=True; cleanup/session.py switches
autocommit off for the span of each local transaction.
"""

from __future__ import annotations

import logging
import time

import pyodbc

import config

logger = logging.getLogger(__name__)

# Cumulative time spent establishing connections in this process.
_connection_time_ms: float = 0.0
_connection_count: int = 0


def _pyodbc_connection_string(database: str) -> str:
    return (
        f"DRIVER={{{config.ODBC_DRIVER}}};"
        f"SERVER={config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT};"
        f"DATABASE={database};"
        f"UID={config.SQL_SERVER_USER};"
        f"PWD={config.SQL_SERVER_PASSWORD};"
        "TrustServerCertificate=yes;"
    )


def get_target_connection() -> pyodbc.Connection:
    return get_connection(config.TARGET_DB)


def get_connection(database: str) -> pyodbc.Connection:
    """Create a fresh pyodbc connection (autocommit=True, not pooled)."""
    global _connection_time_ms, _connection_count
    start = time.monotonic()
    conn = pyodbc.connect(
        _pyodbc_connection_string(database),
        autocommit=True,
        timeout=config.CONNECTION_TIMEOUT,
    )
    elapsed = (time.monotonic() - start) * 1000
    _connection_time_ms += elapsed
    _connection_count += 1
    logger.debug("Connected to %s in %.1f ms", database, elapsed)
    return conn


def get_connection_overhead() -> tuple[float, int]:
    """Return cumulative connection overhead (total_ms, connection_count)."""
    return _connection_time_ms, _connection_count


def close_quietly(conn: pyodbc.Connection | None) -> None:
    """Close a connection, ignoring errors from an already-dead session."""
    if conn is None:
        return
    try:
        conn.close()
    except pyodbc.Error:
        logger.debug("Ignoring error while closing connection", exc_info=True)
