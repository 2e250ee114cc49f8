"""SqlServerLogHandler: logging.Handler -> dbo.DBCleanupPipelineLog.

Modules log through ``logging.getLogger(__name__)`` as usual; this handler
tags each record with the run's RunId, table and legal entities and appends
it to DBCleanupPipelineLog. It writes on a connection of its own, so a
rolled-back cleanup transaction never takes log rows with it.

Records are buffered and flushed every few entries. WARNING and above
flush at once, since those are the rows needed after a killed session.
"""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from datetime import datetime, timezone

import pyodbc

import config
import connections
from identifiers import quote_table

_MESSAGE_LIMIT = 4000

_INSERT_COLUMNS = (
    "RunId", "TableName", "LegalEntity", "LogLevel", "Module",
    "FunctionName", "Message", "ErrorType", "StackTrace", "CreatedAt",
)


class SqlServerLogHandler(logging.Handler):
    """Buffered handler writing to DBCleanupPipelineLog.

    Records are dropped until a RunId is set.

    Usage:
        handler = SqlServerLogHandler()
        handler.set_context(run_id=uuid.uuid4().hex, table_name="CUSTTRANS",
                            legal_entity="usmf,demf")
        logging.getLogger().addHandler(handler)
    """

    def __init__(self, level: int = logging.INFO, flush_every: int = 10) -> None:
        super().__init__(level)
        self._run_id: str | None = None
        self._table_name: str | None = None
        self._legal_entity: str | None = None
        self._pending: list[tuple] = []
        self._pending_lock = threading.RLock()
        self._writing = False
        self._flush_every = flush_every
        self._conn = None
        self._log_table = quote_table(config.DEFAULT_SCHEMA, config.PIPELINE_LOG_TABLE)
        self._insert_sql = (
            f"INSERT INTO {self._log_table} ({', '.join(_INSERT_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _INSERT_COLUMNS)})"
        )

    def set_context(
        self,
        run_id: str | None = None,
        table_name: str | None = None,
        legal_entity: str | None = None,
    ) -> None:
        """Set the values stamped on every following record.

        ``run_id`` is sticky: passing None keeps the current one.
        """
        if run_id is not None:
            self._run_id = run_id
        self._table_name = table_name
        self._legal_entity = legal_entity

    def _build_row(self, record: logging.LogRecord) -> tuple:
        error_type = stack_trace = None
        if record.exc_info and record.exc_info[1] is not None:
            error_type = type(record.exc_info[1]).__name__
            stack_trace = "".join(traceback.format_exception(*record.exc_info))
            stack_trace = stack_trace[-_MESSAGE_LIMIT:]
        return (
            self._run_id,
            self._table_name,
            self._legal_entity,
            record.levelname,
            record.name,
            record.funcName,
            self.format(record)[:_MESSAGE_LIMIT],
            error_type,
            stack_trace,
            datetime.now(timezone.utc),
        )

    def emit(self, record: logging.LogRecord) -> None:
        if self._run_id is None:
            return
        try:
            row = self._build_row(record)
            with self._pending_lock:
                self._pending.append(row)
                # Records logged while writing (connection setup) wait for
                # the next flush.
                if not self._writing and (
                    record.levelno >= logging.WARNING
                    or len(self._pending) >= self._flush_every
                ):
                    self._write_pending()
        except Exception:
            self.handleError(record)

    def _connection(self):
        if self._conn is None:
            self._conn = connections.get_target_connection()
            self._create_table_if_missing()
        return self._conn

    def _create_table_if_missing(self) -> None:
        cursor = self._conn.cursor()
        try:
            cursor.execute("SELECT OBJECT_ID(?, 'U')", self._log_table)
            row = cursor.fetchone()
            if row is not None and row[0] is not None:
                return
            cursor.execute(f"""
                CREATE TABLE {self._log_table} (
                    LogId BIGINT IDENTITY(1,1) PRIMARY KEY,
                    RunId NVARCHAR(64) NOT NULL,
                    TableName NVARCHAR(256) NULL,
                    LegalEntity NVARCHAR(MAX) NULL,
                    LogLevel NVARCHAR(16) NOT NULL,
                    Module NVARCHAR(256) NULL,
                    FunctionName NVARCHAR(256) NULL,
                    Message NVARCHAR(4000) NULL,
                    ErrorType NVARCHAR(256) NULL,
                    StackTrace NVARCHAR(4000) NULL,
                    CreatedAt DATETIME2(3) NOT NULL
                )
            """)
        finally:
            cursor.close()

    def _write_pending(self) -> None:
        if not self._pending:
            return
        rows, self._pending = self._pending, []
        self._writing = True
        try:
            cursor = self._connection().cursor()
            try:
                cursor.executemany(self._insert_sql, rows)
            finally:
                cursor.close()
        except pyodbc.Error as exc:
            # Drop the session; the next flush reconnects.
            connections.close_quietly(self._conn)
            self._conn = None
            print(
                f"[SqlServerLogHandler] could not write {len(rows)} log row(s) "
                f"to {self._log_table}: {exc}",
                file=sys.stderr,
            )
        finally:
            self._writing = False

    def flush(self) -> None:
        with self._pending_lock:
            self._write_pending()

    def close(self) -> None:
        self.flush()
        connections.close_quietly(self._conn)
        self._conn = None
        super().close()
