"""CLI entry point for keep-only-records table cleanup.

Usage:
    python3 main_keep_only.py --table CUSTTRANS --legal-entities usmf,demf \\
        --keep-from-date 2023-01-01 --simulation
    python3 main_keep_only.py --table CUSTTRANS --legal-entities usmf \\
        --keep-from-date 2023-01-01 --commit --batch-size 2000000
    python3 main_keep_only.py --table CUSTTRANS --list-orphans
    python3 main_keep_only.py --table CUSTTRANS --drop-orphans

Run --simulation first: it reports the counts and timings a commit run would
see, without changing the table. Only one run per table at a time (an
application lock enforces this).
"""

from __future__ import annotations

# cli_common sets sys.path; must be imported before any other project modules.
import cli_common

import argparse
import logging
import sys
import uuid

import pyodbc

import config
import connections
from cleanup.errors import BatchError, KeepOnlyError
from observability.run_log import fetch_run_logs
from orchestration.keep_only import KeepOnlyRequest, run_keep_only
from orchestration.table_lock import table_lock
from schema.buffer_cleanup import drop_orphaned_buffers, find_orphaned_buffers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keep only recent records of a table: copy retained rows "
                    "aside, truncate, copy back.",
    )
    parser.add_argument("--table", required=True, help="Table to clean up")
    parser.add_argument("--schema", default=config.DEFAULT_SCHEMA,
                        help=f"Table schema (default: {config.DEFAULT_SCHEMA})")
    parser.add_argument("--legal-entities",
                        help="Comma-separated DATAAREAID values, e.g. usmf,demf")
    parser.add_argument("--keep-from-date", type=cli_common.parse_date,
                        help="Keep rows dated on or after this date (YYYY-MM-DD)")

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--simulation", action="store_true",
                      help="Measure cost; truncate is rolled back, table unchanged")
    mode.add_argument("--commit", action="store_true",
                      help="Permanently remove expired rows")
    mode.add_argument("--list-orphans", action="store_true",
                      help="List buffer tables left by earlier runs and exit")
    mode.add_argument("--drop-orphans", action="store_true",
                      help="Drop buffer tables left by earlier runs and exit")

    parser.add_argument("--threshold", type=cli_common.non_negative_int,
                        default=config.CLEANUP_THRESHOLD,
                        help="Retained rows above which buffers are durable tables "
                             f"(default: {config.CLEANUP_THRESHOLD:,})")
    parser.add_argument("--batch-size", type=cli_common.positive_int,
                        default=config.CLEANUP_BATCH_SIZE,
                        help=f"Rows per buffer table (default: {config.CLEANUP_BATCH_SIZE:,})")
    parser.add_argument("--force", action="store_true",
                        help="Commit even if rows of other legal entities (or with a "
                             "NULL date) would be removed")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if (args.simulation or args.commit) and (
        not args.legal_entities or args.keep_from_date is None
    ):
        parser.error("--legal-entities and --keep-from-date are required for a run")

    run_id = uuid.uuid4().hex
    sql_handler = cli_common.setup_logging(run_id)
    sql_handler.set_context(
        run_id=run_id, table_name=args.table, legal_entity=args.legal_entities,
    )
    logger = logging.getLogger(__name__)

    try:
        with table_lock(args.schema, args.table) as acquired:
            if not acquired:
                logger.error("%s.%s is locked by another cleanup run",
                             args.schema, args.table)
                return 1
            return _dispatch(args, logger)
    finally:
        cli_common.log_connection_overhead()
        sql_handler.flush()


def _dispatch(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = None
    try:
        conn = connections.get_target_connection()

        if args.list_orphans:
            cli_common.print_orphans(find_orphaned_buffers(conn, args.schema, args.table))
            return 0
        if args.drop_orphans:
            drop_orphaned_buffers(conn, args.schema, args.table)
            return 0

        request = KeepOnlyRequest(
            table=args.table,
            legal_entities=args.legal_entities,
            keep_from_date=args.keep_from_date,
            simulation=args.simulation,
            threshold=args.threshold,
            batch_size=args.batch_size,
            schema=args.schema,
            force=args.force,
        )
        result = run_keep_only(conn, request)
        cli_common.print_run_logs(fetch_run_logs(
            conn,
            result.log_row.table_name,
            result.log_row.legal_entity,
            result.log_row.keep_from_date,
        ))
        return 0
    except BatchError as exc:
        logger.exception("Cleanup of %s.%s failed", args.schema, args.table)
        if exc.rows_reinserted or exc.remaining_buffers:
            logger.critical(
                "%s.%s is partially rebuilt (%d rows reinserted). Reconcile from "
                "the remaining buffers before re-running: %s",
                args.schema, args.table, exc.rows_reinserted,
                ", ".join(exc.remaining_buffers) or "none",
            )
        return 1
    except (KeepOnlyError, ValueError, pyodbc.Error):
        logger.exception("Cleanup of %s.%s failed", args.schema, args.table)
        return 1
    finally:
        connections.close_quietly(conn)


if __name__ == "__main__":
    sys.exit(main())
