"""Argument parsing and exit codes for main_keep_only."""

import argparse
import logging
from datetime import date

import pytest

pyodbc = pytest.importorskip("pyodbc")

import cli_common  # noqa: E402
import connections  # noqa: E402
from fakes import FakeConnection  # noqa: E402
from main_keep_only import _dispatch, build_parser  # noqa: E402


def test_run_arguments():
    args = build_parser().parse_args([
        "--table", "CUSTTRANS", "--legal-entities", "usmf,demf",
        "--keep-from-date", "2023-01-01", "--commit", "--batch-size", "2_000_000",
    ])
    assert args.commit and not args.simulation
    assert args.keep_from_date == date(2023, 1, 1)
    assert args.batch_size == 2_000_000
    assert args.schema == "dbo"
    assert args.force is False


def test_mode_is_required_and_exclusive():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["--table", "T"])
    with pytest.raises(SystemExit):
        parser.parse_args(["--table", "T", "--simulation", "--commit"])


@pytest.mark.parametrize("value", ["0", "-3", "abc"])
def test_positive_int_rejects(value):
    with pytest.raises(argparse.ArgumentTypeError):
        cli_common.positive_int(value)


def test_parse_date_rejects_bad_format():
    with pytest.raises(argparse.ArgumentTypeError):
        cli_common.parse_date("01/01/2023")


def test_driver_error_logged_and_exit_code_one(monkeypatch, caplog):
    conn = FakeConnection().fail_on("OBJECT_ID", error=pyodbc.Error("connection gone"))
    monkeypatch.setattr(connections, "get_target_connection", lambda: conn)
    args = build_parser().parse_args([
        "--table", "CUSTTRANS", "--legal-entities", "usmf",
        "--keep-from-date", "2023-01-01", "--simulation",
    ])

    with caplog.at_level(logging.ERROR):
        assert _dispatch(args, logging.getLogger("main_keep_only")) == 1

    assert "Cleanup of dbo.CUSTTRANS failed" in caplog.text
    assert "connection gone" in caplog.text
    assert conn.closed
