"""Per-table application lock so two cleanup runs never overlap.

Two concurrent runs on one table collide on buffer names, and one run's
TRUNCATE destroys the other's source rows. The CLI holds an exclusive
``sp_getapplock`` on ``KeepOnlyRecords_<schema>_<table>`` for the whole run.

The lock is Session-owned and lives on its own autocommit connection, never
on the run's connection: the run toggles autocommit and rolls transactions
back, and neither may release the lock. Closing the lock connection (also on
a crash) releases it.

Usage:
    with table_lock("dbo", "CUSTTRANS") as acquired:
        if not acquired:
            return 1
        run_keep_only(...)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

import pyodbc

import connections

logger = logging.getLogger(__name__)

LOCK_RESOURCE = "KeepOnlyRecords_{schema}_{table}"

# sp_getapplock return codes below zero
_LOCK_FAILURES = {
    -1: "timed out",
    -2: "cancelled",
    -3: "chosen as deadlock victim",
    -999: "parameter or call error",
}


def lock_resource(schema: str, table: str) -> str:
    return LOCK_RESOURCE.format(schema=schema, table=table)


def _request_lock(conn, resource: str, timeout_ms: int) -> int:
    cursor = conn.cursor()
    try:
        cursor.execute(
            "DECLARE @rc INT; "
            "EXEC @rc = sp_getapplock @Resource = ?, @LockMode = 'Exclusive', "
            "@LockOwner = 'Session', @LockTimeout = ?; "
            "SELECT @rc;",
            resource, timeout_ms,
        )
        return int(cursor.fetchone()[0])
    finally:
        cursor.close()


def _release_lock(conn, resource: str) -> None:
    cursor = conn.cursor()
    try:
        cursor.execute(
            "EXEC sp_releaseapplock @Resource = ?, @LockOwner = 'Session';",
            resource,
        )
    finally:
        cursor.close()


@contextmanager
def table_lock(schema: str, table: str, timeout_ms: int = 0):
    """Hold the cleanup lock for ``schema.table`` for the duration of the block.

    Yields True when the lock was granted, False when another run holds it
    (or it could not be requested). With ``timeout_ms=0`` the request does
    not wait.
    """
    resource = lock_resource(schema, table)
    conn = None
    granted = False
    try:
        conn = connections.get_target_connection()
        rc = _request_lock(conn, resource, timeout_ms)
        if rc >= 0:
            granted = True
            logger.info("Holding lock %s", resource)
        else:
            logger.warning(
                "Lock %s not granted (%s); another cleanup run owns this table",
                resource, _LOCK_FAILURES.get(rc, f"rc={rc}"),
            )
    except pyodbc.Error:
        logger.exception("Lock request failed: %s", resource)

    try:
        yield granted
    finally:
        if granted:
            try:
                _release_lock(conn, resource)
                logger.debug("Released lock %s", resource)
            except pyodbc.Error:
                # Closing the session releases it too.
                logger.warning("Could not release lock %s", resource, exc_info=True)
        connections.close_quietly(conn)
