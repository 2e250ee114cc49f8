"""End-to-end keep-only-records runs against a scripted table."""

from datetime import date

import pytest

from cleanup.buffer_strategy import BufferKind
from cleanup.errors import BatchError, GuardError, SchemaError, TrackingToggleError
from fakes import FakeConnection, ScriptedTable
from orchestration.keep_only import KeepOnlyRequest, run_keep_only

CUTOFF = date(2023, 1, 1)


def _request(**overrides):
    params = dict(
        table="CUSTTRANS",
        legal_entities="usmf,demf",
        keep_from_date=CUTOFF,
        simulation=False,
        threshold=2_000_000,
        batch_size=5_000_000,
    )
    params.update(overrides)
    return KeepOnlyRequest(**params)


def test_commit_keeps_retained_rows_with_durable_buffers():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9_000_000, retained=3_000_000)

    result = run_keep_only(conn, _request())

    assert result.buffer_kind is BufferKind.DURABLE
    assert table.row_count == 3_000_000
    assert table.buffers == {}
    assert result.move.batches == 1
    assert len(table.log_rows) == 1
    logged = table.log_rows[0]
    assert logged[:5] == ("CUSTTRANS", "usmf,demf", "2023-01-01", 9_000_000, 3_000_000)
    assert logged[5] == result.log_row.duration_ms >= 0
    assert "INTO [dbo].[CUSTTRANS_cleanupbuffer1]" in conn.executed("OFFSET ? ROWS")[0].sql


def test_simulation_leaves_table_unchanged_and_logs_counts():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9_000_000, retained=3_000_000)

    result = run_keep_only(conn, _request(simulation=True))

    assert table.row_count == 12_000_000
    assert table.buffers == {}
    assert result.move.rows_scanned == 3_000_000
    assert table.log_rows[0][3:5] == (9_000_000, 3_000_000)
    assert not conn.executed("WITH (TABLOCK)")


def test_small_retained_set_uses_temporary_buffers():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=1_000, retained=500)

    result = run_keep_only(conn, _request())

    assert result.buffer_kind is BufferKind.TEMPORARY
    assert conn.executed("INTO [##dbo_CUSTTRANS_cleanuptemp1]")
    assert table.row_count == 500


def test_second_commit_is_idempotent():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9_000, retained=3_000)

    run_keep_only(conn, _request())
    second = run_keep_only(conn, _request())

    assert second.counts.expired == 0
    assert second.counts.retained == 3_000
    assert table.row_count == 3_000
    assert [r[3] for r in table.log_rows] == [9_000, 0]


@pytest.mark.parametrize("simulation", [False, True])
def test_tracking_disabled_around_truncate_and_restored(simulation):
    conn = FakeConnection()
    table = ScriptedTable(
        conn, expired=90, retained=30,
        cdc=True, change_tracking=True, track_columns_updated=True,
    )

    result = run_keep_only(conn, _request(simulation=simulation))

    assert table.tracking == (True, True)
    assert conn.state["track_columns_updated"] is True
    assert result.tracking.cdc_enabled and result.tracking.change_tracking_enabled

    sql = conn.sql()
    truncate = next(i for i, s in enumerate(sql) if "TRUNCATE TABLE" in s)
    cdc_off = next(i for i, s in enumerate(sql) if "sys.sp_cdc_disable_table" in s)
    cdc_on = next(i for i, s in enumerate(sql) if "sys.sp_cdc_enable_table" in s)
    ct_off = next(i for i, s in enumerate(sql) if "DISABLE CHANGE_TRACKING" in s)
    ct_on = next(i for i, s in enumerate(sql) if "ENABLE CHANGE_TRACKING WITH" in s)
    log = next(i for i, s in enumerate(sql) if "INSERT INTO [dbo].[DBCleanupResultsLog]" in s)
    assert cdc_off < ct_off < truncate < log < cdc_on < ct_on


def test_untracked_table_issues_no_toggles():
    conn = FakeConnection()
    ScriptedTable(conn, expired=9, retained=3)
    run_keep_only(conn, _request())
    assert not conn.executed("sp_cdc")
    assert not conn.executed("CHANGE_TRACKING WITH")
    assert not conn.executed("DISABLE CHANGE_TRACKING")


def test_schema_error_before_any_mutation():
    conn = FakeConnection()
    table = ScriptedTable(
        conn, columns=(("RECID", "bigint", False, False), ("DATAAREAID", "nvarchar", False, False)),
        expired=9, retained=3, cdc=True,
    )

    with pytest.raises(SchemaError, match="no timestamp column"):
        run_keep_only(conn, _request())

    assert table.row_count == 12
    assert table.log_rows == []
    assert not conn.executed("sp_cdc")
    assert not conn.executed("TRUNCATE TABLE")


def test_coverage_guard_blocks_commit_and_restores_tracking():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9, retained=3, other=4, change_tracking=True)

    with pytest.raises(GuardError):
        run_keep_only(conn, _request())

    assert table.row_count == 16
    assert table.log_rows == []
    assert table.tracking == (False, True)
    assert not conn.executed("TRUNCATE TABLE")


def test_coverage_guard_forced_commit_drops_other_rows():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9, retained=3, other=4)

    run_keep_only(conn, _request(force=True))

    assert table.row_count == 3


def test_coverage_guard_only_warns_in_simulation():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9, retained=3, other=4)

    run_keep_only(conn, _request(simulation=True))

    assert table.row_count == 16
    assert len(table.log_rows) == 1


def test_batch_failure_restores_tracking_and_writes_no_log_row():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9, retained=3, cdc=True)
    conn.fail_on("TRUNCATE TABLE")

    with pytest.raises(BatchError):
        run_keep_only(conn, _request())

    assert table.tracking == (True, False)
    assert table.log_rows == []
    assert table.row_count == 12


def test_restore_failure_after_run_failure_is_reported():
    conn = FakeConnection()
    ScriptedTable(conn, expired=9, retained=3, cdc=True)
    conn.fail_on("TRUNCATE TABLE")
    conn.fail_on("sys.sp_cdc_enable_table")

    with pytest.raises(TrackingToggleError, match="after run failure") as excinfo:
        run_keep_only(conn, _request())

    assert isinstance(excinfo.value.__cause__, BatchError)


def test_restore_failure_after_success_raises():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9, retained=3, change_tracking=True)
    conn.fail_on("ENABLE CHANGE_TRACKING WITH")

    with pytest.raises(TrackingToggleError):
        run_keep_only(conn, _request())

    assert len(table.log_rows) == 1


@pytest.mark.parametrize("overrides", [
    {"table": "CUSTTRANS; DROP TABLE x"},
    {"schema": "dbo]"},
    {"batch_size": 0},
    {"threshold": -1},
])
def test_invalid_request_rejected(overrides):
    with pytest.raises(ValueError):
        _request(**overrides)


def test_empty_legal_entities_rejected_before_sql():
    conn = FakeConnection()
    ScriptedTable(conn)
    with pytest.raises(ValueError):
        run_keep_only(conn, _request(legal_entities=" , "))
    assert conn.statements == []


def test_simulation_twice_logs_same_counts_and_changes_nothing():
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9_000_000, retained=3_000_000, cdc=True)
    request = _request(legal_entities="US", simulation=True)

    run_keep_only(conn, request)
    run_keep_only(conn, request)

    assert [r[3:5] for r in table.log_rows] == [
        (9_000_000, 3_000_000), (9_000_000, 3_000_000),
    ]
    assert table.row_count == 12_000_000
    assert table.tracking == (True, False)


@pytest.mark.parametrize("simulation", [False, True])
def test_cdc_only_table_round_trip(simulation):
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=9, retained=3, cdc=True)

    run_keep_only(conn, _request(simulation=simulation))

    assert table.tracking == (True, False)
    assert not conn.executed("CHANGE_TRACKING")


@pytest.mark.parametrize("failing", [
    lambda s: "OFFSET ? ROWS" in s and "cleanuptemp2" in s,
    lambda s: s.startswith("TRUNCATE TABLE"),
])
def test_interrupted_simulation_restores_tracking(failing):
    conn = FakeConnection()
    table = ScriptedTable(conn, expired=90, retained=30,
                          cdc=True, change_tracking=True)
    conn.fail_on(failing, error=KeyboardInterrupt())

    with pytest.raises(KeyboardInterrupt):
        run_keep_only(conn, _request(simulation=True, batch_size=10))

    assert table.tracking == (True, True)
    assert table.buffers == {}
    assert table.row_count == 120
    assert table.log_rows == []


@pytest.mark.parametrize("simulation", [False, True])
def test_log_space_checked_in_both_modes(simulation):
    conn = FakeConnection()
    ScriptedTable(conn, expired=9, retained=3)

    run_keep_only(conn, _request(simulation=simulation))

    assert conn.executed("sys.dm_db_partition_stats")
