"""SQL identifier validation and quoting for dynamic table/column names.

Values (dates, legal entities, offsets) are always bound as parameters.
Identifiers cannot be, so every table, column and buffer name that ends up in
a statement goes through this module first:

  1. validate_identifier() rejects anything outside ``[A-Za-z_][A-Za-z0-9_]*``
     (plus the 128-char sysname limit).
  2. quote_identifier() bracket-escapes the validated name, equivalent to
     T-SQL QUOTENAME().

Names read back from the catalog (column lists) go through the same path, so a
column created with an exotic name makes the run fail instead of being
interpolated.
"""

from __future__ import annotations

import re

_MAX_IDENTIFIER_LENGTH = 128  # SQL Server sysname limit (matches QUOTENAME())

# Global temp table names are capped at 116 chars (SQL Server appends a suffix).
_MAX_TEMP_IDENTIFIER_LENGTH = 116

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Return ``name`` unchanged if it matches the allow-listed grammar.

    Raises:
        ValueError: If name is empty, too long, or contains characters
            outside ``[A-Za-z0-9_]`` (or starts with a digit).
    """
    if not name:
        raise ValueError("Identifier cannot be empty")
    if len(name) > _MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Identifier exceeds {_MAX_IDENTIFIER_LENGTH} characters "
            f"(len={len(name)}): {name[:50]}..."
        )
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Identifier contains disallowed characters: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """Validate and bracket-escape a SQL Server identifier.

    Returns:
        e.g. ``[CUSTTRANS]``
    """
    validate_identifier(name)
    # The grammar excludes ']' already; doubling keeps QUOTENAME() semantics
    # if the grammar is ever widened.
    return f"[{name.replace(']', ']]')}]"


def quote_table(schema: str, table: str) -> str:
    """Validate and quote a two-part table name.

    Returns:
        e.g. ``[dbo].[CUSTTRANS]``
    """
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def quote_temp_table(name: str) -> str:
    """Validate and quote a global temporary table name (``##name``).

    ``name`` is given without the ``##`` prefix.
    """
    validate_identifier(name)
    if len(name) + 2 > _MAX_TEMP_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Temp table name exceeds {_MAX_TEMP_IDENTIFIER_LENGTH} characters: "
            f"##{name[:50]}..."
        )
    return f"[##{name}]"


def column_list(columns: list[str] | tuple[str, ...]) -> str:
    """Comma-joined, quoted column list for SELECT / INSERT."""
    if not columns:
        raise ValueError("Column list cannot be empty")
    return ", ".join(quote_identifier(c) for c in columns)
