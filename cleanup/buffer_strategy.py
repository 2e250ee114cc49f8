"""Buffer table kind selection and naming.

Large retained sets go to durable tables in the target database; small ones
to ## global temp tables, which are cheaper to create and drop but live in
tempdb and disappear with the session.

Buffer names are deterministic so a re-run drops the previous attempt's
buffers before reusing an index:
  DURABLE    [<schema>].[<table>_cleanupbuffer<N>]
  TEMPORARY  [##<schema>_<table>_cleanuptemp<N>]

## names are global to the instance, so the temporary name carries the
schema to keep tables of the same name in different schemas apart.
"""

from __future__ import annotations

import re
from enum import Enum

from identifiers import quote_table, quote_temp_table, validate_identifier


class BufferKind(Enum):
    DURABLE = "cleanupbuffer"
    TEMPORARY = "cleanuptemp"

    @property
    def suffix(self) -> str:
        return self.value


def select_buffer_kind(retained_count: int, threshold: int) -> BufferKind:
    """DURABLE when retained_count exceeds threshold, else TEMPORARY."""
    if threshold < 0:
        raise ValueError(f"threshold must be >= 0, got {threshold}")
    if retained_count > threshold:
        return BufferKind.DURABLE
    return BufferKind.TEMPORARY


def buffer_base_name(kind: BufferKind, schema: str, table: str, index: int) -> str:
    """Unquoted buffer name without ## prefix.

    e.g. CUSTTRANS_cleanupbuffer3 (DURABLE), dbo_CUSTTRANS_cleanuptemp3 (TEMPORARY).
    """
    if index < 1:
        raise ValueError(f"Buffer index must be >= 1, got {index}")
    if kind is BufferKind.TEMPORARY:
        return validate_identifier(f"{schema}_{table}_{kind.suffix}{index}")
    return validate_identifier(f"{table}_{kind.suffix}{index}")


def buffer_name(kind: BufferKind, schema: str, table: str, index: int) -> str:
    """Quoted buffer table name usable in SQL."""
    base = buffer_base_name(kind, schema, table, index)
    if kind is BufferKind.DURABLE:
        return quote_table(schema, base)
    return quote_temp_table(base)


def buffer_name_pattern(kind: BufferKind, schema: str, table: str) -> re.Pattern:
    """Regex matching unquoted buffer names (## and schema included for TEMPORARY)."""
    prefix = f"##{schema}_" if kind is BufferKind.TEMPORARY else ""
    return re.compile(
        rf"^{re.escape(prefix)}{re.escape(table)}_{kind.suffix}(\d+)$",
        re.IGNORECASE,
    )
