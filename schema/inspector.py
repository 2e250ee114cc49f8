"""Schema inspection for keep-only-records runs.

Resolves, from the catalog, everything the cleanup needs to know about a
target table before touching it:
  - the timestamp column the retention filter compares against
    (CREATEDDATETIME, falling back to MODIFIEDDATETIME)
  - the partition column (DATAAREAID)
  - the stable row identifier used to page batches deterministically
    (RECID, falling back to the primary key)
  - the insertable column list: rowversion/timestamp and computed columns
    are excluded because neither can be written by INSERT ... SELECT
  - the identity column, if any (reinsert needs IDENTITY_INSERT)

Read-only. Column names are matched case-insensitively and returned in the
catalog's casing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cleanup.errors import SchemaError
from identifiers import quote_table, validate_identifier

logger = logging.getLogger(__name__)

CREATED_DATE_COLUMN = "CREATEDDATETIME"
MODIFIED_DATE_COLUMN = "MODIFIEDDATETIME"
PARTITION_COLUMN = "DATAAREAID"
ROW_ID_COLUMN = "RECID"

# TYPE_NAME() of rowversion columns
_ROW_VERSION_TYPES = {"timestamp", "rowversion"}


@dataclass(frozen=True)
class TableSchema:
    """Resolved metadata for one target table."""

    schema: str
    table: str
    date_column: str
    has_partition_column: bool
    partition_column: str
    columns: tuple[str, ...]
    row_id_columns: tuple[str, ...]
    identity_column: str | None = None

    @property
    def qualified_name(self) -> str:
        """Quoted two-part name, e.g. ``[dbo].[CUSTTRANS]``."""
        return quote_table(self.schema, self.table)

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.table}"


def inspect_table(conn, schema: str, table: str) -> TableSchema:
    """Read column metadata and resolve date/partition/row-id columns.

    Args:
        conn: Open pyodbc connection to the target database.
        schema: Schema name, e.g. ``dbo``.
        table: Table name, e.g. ``CUSTTRANS``.

    Returns:
        TableSchema for the table.

    Raises:
        ValueError: If schema or table is not a safe identifier.
        SchemaError: If the table does not exist, or lacks a timestamp
            column, a partition column, or a stable row identifier.
    """
    qualified = quote_table(schema, table)
    display = f"{schema}.{table}"

    cursor = conn.cursor()
    try:
        cursor.execute(
            "SELECT c.name, TYPE_NAME(c.system_type_id), c.is_computed, c.is_identity "
            "FROM sys.columns c "
            "WHERE c.object_id = OBJECT_ID(?) "
            "ORDER BY c.column_id",
            qualified,
        )
        rows = cursor.fetchall()
    finally:
        cursor.close()

    if not rows:
        raise SchemaError(f"{display}: table not found")

    by_upper = {row[0].upper(): row[0] for row in rows}

    # Date column: created, then modified
    if CREATED_DATE_COLUMN in by_upper:
        date_column = by_upper[CREATED_DATE_COLUMN]
    elif MODIFIED_DATE_COLUMN in by_upper:
        date_column = by_upper[MODIFIED_DATE_COLUMN]
    else:
        logger.warning(
            "%s does not have %s or %s", display,
            CREATED_DATE_COLUMN, MODIFIED_DATE_COLUMN,
        )
        raise SchemaError(f"{display}: no timestamp column")

    if PARTITION_COLUMN not in by_upper:
        logger.warning("%s does not have %s", display, PARTITION_COLUMN)
        raise SchemaError(f"{display}: no partition column")
    partition_column = by_upper[PARTITION_COLUMN]

    columns: list[str] = []
    identity_column: str | None = None
    for name, type_name, is_computed, is_identity in rows:
        if (type_name or "").lower() in _ROW_VERSION_TYPES:
            logger.debug("%s: skipping row-version column %s", display, name)
            continue
        if is_computed:
            logger.debug("%s: skipping computed column %s", display, name)
            continue
        try:
            validate_identifier(name)
        except ValueError as exc:
            raise SchemaError(f"{display}: unsupported column name {name!r}") from exc
        columns.append(name)
        if is_identity:
            identity_column = name

    row_id_columns = _resolve_row_id(conn, qualified, display, by_upper)

    result = TableSchema(
        schema=schema,
        table=table,
        date_column=date_column,
        has_partition_column=True,
        partition_column=partition_column,
        columns=tuple(columns),
        row_id_columns=row_id_columns,
        identity_column=identity_column,
    )
    logger.info(
        "Inspected %s: date column=%s, row id=%s, %d insertable columns%s",
        display, date_column, ",".join(row_id_columns), len(columns),
        f", identity={identity_column}" if identity_column else "",
    )
    return result


def _resolve_row_id(
    conn,
    qualified: str,
    display: str,
    by_upper: dict[str, str],
) -> tuple[str, ...]:
    """RECID if present, else the primary key columns in key order."""
    if ROW_ID_COLUMN in by_upper:
        return (by_upper[ROW_ID_COLUMN],)

    cursor = conn.cursor()
    try:
        cursor.execute(
            "SELECT c.name "
            "FROM sys.indexes i "
            "JOIN sys.index_columns ic "
            "  ON ic.object_id = i.object_id AND ic.index_id = i.index_id "
            "JOIN sys.columns c "
            "  ON c.object_id = ic.object_id AND c.column_id = ic.column_id "
            "WHERE i.object_id = OBJECT_ID(?) AND i.is_primary_key = 1 "
            "ORDER BY ic.key_ordinal",
            qualified,
        )
        pk_rows = cursor.fetchall()
    finally:
        cursor.close()

    if not pk_rows:
        raise SchemaError(
            f"{display}: no stable row identifier ({ROW_ID_COLUMN} or primary key)"
        )
    logger.info(
        "%s has no %s column; paging by primary key", display, ROW_ID_COLUMN,
    )
    for (name,) in pk_rows:
        try:
            validate_identifier(name)
        except ValueError as exc:
            raise SchemaError(f"{display}: unsupported key column name {name!r}") from exc
    return tuple(row[0] for row in pk_rows)
