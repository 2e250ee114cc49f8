"""Local transaction scoping and BatchError formatting."""

import pytest

from cleanup.errors import BatchError
from cleanup.session import Stopwatch, local_transaction
from fakes import FakeConnection


def test_commit_on_success_and_autocommit_restored():
    conn = FakeConnection()
    with local_transaction(conn) as cur:
        assert conn.autocommit is False
        cur.execute("TRUNCATE TABLE [dbo].[T]")
    assert conn.events[-1] == "COMMIT"
    assert conn.autocommit is True


def test_rollback_only():
    conn = FakeConnection()
    with local_transaction(conn, rollback_only=True) as cur:
        cur.execute("TRUNCATE TABLE [dbo].[T]")
    assert conn.events[-1] == "ROLLBACK"
    assert "COMMIT" not in conn.events


def test_rollback_on_error_and_reraise():
    conn = FakeConnection().fail_on("INSERT")
    with pytest.raises(RuntimeError):
        with local_transaction(conn) as cur:
            cur.execute("INSERT INTO [dbo].[T] SELECT 1")
    assert conn.events[-1] == "ROLLBACK"
    assert conn.autocommit is True


def test_stopwatch():
    with Stopwatch() as sw:
        pass
    assert sw.elapsed_ms >= 0
    assert Stopwatch().elapsed_ms == 0


def test_batch_error_message_carries_progress():
    err = BatchError(
        "Reinsert failed", phase="REINSERTING", batch_index=2,
        batches_completed=1, rows_reinserted=5,
        remaining_buffers=["[dbo].[T_cleanupbuffer2]"],
    )
    assert "phase=REINSERTING" in str(err)
    assert "rows_reinserted=5" in str(err)
    assert "[dbo].[T_cleanupbuffer2]" in str(err)


def _truncate_then_interrupt(conn):
    def effect(sql, params):
        conn.state["rows"] = 0
        raise KeyboardInterrupt
    return effect


@pytest.mark.parametrize("rollback_only", [True, False])
def test_interrupt_rolls_back_before_autocommit_restored(rollback_only):
    conn = FakeConnection()
    conn.state["rows"] = 5
    conn.on("TRUNCATE TABLE", effect=_truncate_then_interrupt(conn))

    with pytest.raises(KeyboardInterrupt):
        with local_transaction(conn, rollback_only=rollback_only) as cur:
            cur.execute("TRUNCATE TABLE [dbo].[CUSTTRANS]")

    assert "IMPLICIT COMMIT" not in conn.events
    assert "COMMIT" not in conn.events
    assert conn.events[-1] == "ROLLBACK"
    assert conn.state["rows"] == 5
    assert conn.autocommit is True


def test_system_exit_in_block_rolls_back():
    conn = FakeConnection()
    conn.state["rows"] = 5

    with pytest.raises(SystemExit):
        with local_transaction(conn) as cur:
            cur.execute("DELETE FROM [dbo].[CUSTTRANS]")
            conn.state["rows"] = 0
            raise SystemExit(1)

    assert conn.events[-1] == "ROLLBACK"
    assert conn.state["rows"] == 5
