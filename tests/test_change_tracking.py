"""CDC / Change Tracking capture, disable and restore."""

import pytest

from cleanup import change_tracking
from cleanup.change_tracking import CaptureInstance, TrackingState
from cleanup.errors import TrackingToggleError
from fakes import FakeConnection
from schema.inspector import TableSchema

TS = TableSchema(
    schema="dbo",
    table="CUSTTRANS",
    date_column="CREATEDDATETIME",
    has_partition_column=True,
    partition_column="DATAAREAID",
    columns=("RECID", "DATAAREAID", "CREATEDDATETIME"),
    row_id_columns=("RECID",),
)


def test_capture_state_nothing_enabled():
    conn = FakeConnection().on("FROM sys.tables t", rows=[(False, 0, None)])

    state = change_tracking.capture_state(conn, TS)

    assert state == TrackingState()
    assert not state.any_enabled
    assert not conn.executed("FROM cdc.change_tables")


def test_capture_state_reads_capture_instances():
    conn = FakeConnection()
    conn.on("FROM sys.tables t", rows=[(True, 1, True)])
    conn.on("FROM cdc.change_tables", rows=[
        ("dbo_CUSTTRANS", "cdc_reader", 1, "I_RECID", "CDC_FG"),
    ])

    state = change_tracking.capture_state(conn, TS)

    assert state.cdc_enabled and state.change_tracking_enabled
    assert state.track_columns_updated
    assert state.capture_instances == (
        CaptureInstance("dbo_CUSTTRANS", "cdc_reader", True, "I_RECID", "CDC_FG"),
    )


def test_capture_state_catalog_failure_raises():
    conn = FakeConnection().fail_on("FROM sys.tables t")
    with pytest.raises(TrackingToggleError):
        change_tracking.capture_state(conn, TS)


def test_disable_nothing_enabled_issues_no_statements():
    conn = FakeConnection()
    change_tracking.disable(conn, TS, TrackingState())
    assert conn.statements == []


def test_disable_then_restore_round_trip():
    conn = FakeConnection()
    state = TrackingState(
        cdc_enabled=True,
        change_tracking_enabled=True,
        track_columns_updated=True,
        capture_instances=(CaptureInstance("dbo_CUSTTRANS", None, True),),
    )

    change_tracking.disable(conn, TS, state)
    change_tracking.restore(conn, TS, state)

    sql = conn.sql()
    assert "sys.sp_cdc_disable_table" in sql[0]
    assert conn.statements[0].params == ("dbo", "CUSTTRANS", "all")
    assert sql[1] == "ALTER TABLE [dbo].[CUSTTRANS] DISABLE CHANGE_TRACKING"
    assert "sys.sp_cdc_enable_table" in sql[2]
    assert conn.statements[2].params == ("dbo", "CUSTTRANS", None, "dbo_CUSTTRANS", 1, None, None)
    assert sql[3] == (
        "ALTER TABLE [dbo].[CUSTTRANS] ENABLE CHANGE_TRACKING "
        "WITH (TRACK_COLUMNS_UPDATED = ON)"
    )


def test_restore_only_what_was_enabled():
    conn = FakeConnection()
    change_tracking.restore(conn, TS, TrackingState(change_tracking_enabled=True))
    assert len(conn.statements) == 1
    assert "TRACK_COLUMNS_UPDATED = OFF" in conn.statements[0].sql


def test_restore_cdc_without_recorded_instance_uses_defaults():
    conn = FakeConnection()
    change_tracking.restore(conn, TS, TrackingState(cdc_enabled=True))
    assert conn.statements[0].params == ("dbo", "CUSTTRANS", None, None, 0, None, None)


def test_disable_change_tracking_failure_re_enables_cdc():
    conn = FakeConnection().fail_on("DISABLE CHANGE_TRACKING")
    state = TrackingState(cdc_enabled=True, change_tracking_enabled=True)

    with pytest.raises(TrackingToggleError, match="change tracking"):
        change_tracking.disable(conn, TS, state)

    assert conn.executed("sys.sp_cdc_enable_table")


def test_restore_attempts_both_and_reports_all_failures():
    conn = FakeConnection().fail_on("sys.sp_cdc_enable_table")
    state = TrackingState(cdc_enabled=True, change_tracking_enabled=True)

    with pytest.raises(TrackingToggleError, match="CDC") as excinfo:
        change_tracking.restore(conn, TS, state)

    assert conn.executed("ENABLE CHANGE_TRACKING")
    assert isinstance(excinfo.value.__cause__, RuntimeError)
