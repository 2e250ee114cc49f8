"""CLI common boilerplate: logging setup, argument types, result printing.

Import this module BEFORE any other project imports in main_*.py files: it
puts the project root on sys.path so the flat modules resolve when the CLI is
run as a script.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from pathlib import Path

# Ensure project root is on sys.path for imports
sys.path.insert(0, str(Path(__file__).parent))

import config
from observability.log_handler import SqlServerLogHandler

logger = logging.getLogger(__name__)


def setup_logging(run_id: str | None = None) -> SqlServerLogHandler:
    """Configure logging: StreamHandler + SqlServerLogHandler.

    Args:
        run_id: Identifier correlating this invocation's log rows.

    Returns:
        The SqlServerLogHandler instance (for flush/context updates).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")
    )
    root.addHandler(console)

    # SQL Server log handler
    sql_handler = SqlServerLogHandler(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
    if run_id is not None:
        sql_handler.set_context(run_id=run_id)
    root.addHandler(sql_handler)

    return sql_handler


def parse_date(value: str) -> date:
    """argparse type for YYYY-MM-DD dates."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}")


def positive_int(value: str) -> int:
    """argparse type for integers > 0."""
    try:
        number = int(value.replace("_", "").replace(",", ""))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"Must be positive: {value}")
    return number


def non_negative_int(value: str) -> int:
    """argparse type for integers >= 0."""
    try:
        number = int(value.replace("_", "").replace(",", ""))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"Must be >= 0: {value}")
    return number


def print_run_logs(rows) -> None:
    """Print DBCleanupResultsLog rows for post-run verification."""
    print(
        f"\n{'Table':<30} {'LegalEntity':<20} {'KeepFrom':<12} "
        f"{'Deleted':>14} {'Saved':>14} {'Duration ms':>12}  RunTimestamp"
    )
    print("-" * 130)
    for r in rows:
        print(
            f"{r.table_name:<30} {r.legal_entity:<20} {r.keep_from_date.isoformat():<12} "
            f"{r.records_deleted:>14,} {r.records_saved:>14,} {r.duration_ms:>12,}  "
            f"{r.run_timestamp}"
        )
    print(f"\nTotal: {len(rows)} run(s)")


def print_orphans(orphans) -> None:
    """Print orphaned buffer tables found for a table."""
    if not orphans:
        print("No orphaned buffer tables found.")
        return
    print(f"\n{'Kind':<10} {'Index':>5}  {'Rows':>14}  Name")
    print("-" * 80)
    for o in orphans:
        rows = "?" if o.row_count is None else f"{o.row_count:,}"
        print(f"{o.kind.name:<10} {o.index:>5}  {rows:>14}  {o.name}")
    print(f"\nTotal: {len(orphans)} buffer table(s)")


def log_connection_overhead() -> None:
    """Log cumulative connection overhead at the end of the run."""
    from connections import get_connection_overhead
    total_ms, count = get_connection_overhead()
    if count > 0:
        logger.info(
            "Connection overhead: %.1f ms total across %d connections (%.1f ms avg)",
            total_ms, count, total_ms / count,
        )
