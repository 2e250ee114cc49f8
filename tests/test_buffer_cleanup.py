"""Orphaned buffer listing and removal."""

from cleanup.buffer_strategy import BufferKind
from fakes import FakeConnection
from schema.buffer_cleanup import drop_orphaned_buffers, find_orphaned_buffers


def _conn():
    conn = FakeConnection()
    conn.on("FROM sys.tables t", rows=[
        ("CUSTTRANS_cleanupbuffer2", 400),
        ("CUSTTRANS_cleanupbuffer10", None),
        ("CUSTTRANS_cleanupbuffer_old", 5),
    ])
    conn.on("FROM tempdb.sys.tables", rows=[("##dbo_CUSTTRANS_cleanuptemp1",)])
    return conn


def test_find_orphans_filters_and_orders():
    conn = _conn()

    orphans = find_orphaned_buffers(conn, "dbo", "CUSTTRANS")

    assert [(o.kind, o.index, o.name, o.row_count) for o in orphans] == [
        (BufferKind.DURABLE, 2, "[dbo].[CUSTTRANS_cleanupbuffer2]", 400),
        (BufferKind.DURABLE, 10, "[dbo].[CUSTTRANS_cleanupbuffer10]", None),
        (BufferKind.TEMPORARY, 1, "[##dbo_CUSTTRANS_cleanuptemp1]", None),
    ]
    assert conn.statements[0].params == ("dbo", "CUSTTRANS[_]cleanupbuffer%")
    assert conn.statements[1].params == ("##dbo[_]CUSTTRANS[_]cleanuptemp%",)


def test_drop_orphans_continues_past_failures():
    conn = _conn()
    conn.fail_on("DROP TABLE IF EXISTS [dbo].[CUSTTRANS_cleanupbuffer10]")

    assert drop_orphaned_buffers(conn, "dbo", "CUSTTRANS") == 2
    assert len(conn.executed("DROP TABLE IF EXISTS")) == 3
