"""Retention filter: which legal entities, and the keep-from date.

A row is *expired* when its partition (DATAAREAID) is one of the listed legal
entities and its timestamp is before the cutoff; *retained* when the partition
is listed and the timestamp is on or after the cutoff. Both predicates are
built here so the counter and the batch mover can never disagree on the
column or the operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from identifiers import quote_identifier

# pyodbc caps a statement at 2100 parameters; keep room for offset/fetch/date.
_MAX_LEGAL_ENTITIES = 2000


def parse_legal_entities(raw: str | list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Split a comma-separated legal entity list.

    Whitespace is stripped, empty items dropped, and duplicates removed
    case-insensitively (DATAAREAID comparisons follow the database's
    case-insensitive collation). First spelling wins.

    Raises:
        ValueError: If no legal entity remains, or too many are given.
    """
    items = raw.split(",") if isinstance(raw, str) else list(raw)

    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        value = item.strip()
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        result.append(value)

    if not result:
        raise ValueError("At least one legal entity is required")
    if len(result) > _MAX_LEGAL_ENTITIES:
        raise ValueError(
            f"Too many legal entities ({len(result)}); maximum is {_MAX_LEGAL_ENTITIES}"
        )
    return tuple(result)


@dataclass(frozen=True)
class RetentionFilter:
    """Legal entities + cutoff date for one cleanup run."""

    legal_entities: tuple[str, ...]
    cutoff_date: date

    @classmethod
    def build(
        cls,
        legal_entities: str | list[str] | tuple[str, ...],
        cutoff_date: date,
    ) -> RetentionFilter:
        if isinstance(cutoff_date, datetime):
            cutoff_date = cutoff_date.date()
        if not isinstance(cutoff_date, date):
            raise ValueError(f"cutoff_date must be a date, got {cutoff_date!r}")
        return cls(parse_legal_entities(legal_entities), cutoff_date)

    @property
    def legal_entity_label(self) -> str:
        """Comma-joined legal entities, as stored in the results log."""
        return ",".join(self.legal_entities)

    def predicate(
        self,
        partition_column: str,
        date_column: str,
        *,
        expired: bool,
    ) -> tuple[str, list]:
        """Return (WHERE clause, params) for the expired or retained set.

        The clause uses ``?`` placeholders; params are the legal entities
        followed by the cutoff date.
        """
        placeholders = ", ".join("?" for _ in self.legal_entities)
        operator = "<" if expired else ">="
        clause = (
            f"{quote_identifier(partition_column)} IN ({placeholders}) "
            f"AND {quote_identifier(date_column)} {operator} ?"
        )
        return clause, [*self.legal_entities, self.cutoff_date]
