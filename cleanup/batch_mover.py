"""Batch mover: in-place compaction of a table down to its retained rows.

Three-phase pipeline, one forward pass:

  COPYING      retained rows -> numbered buffer tables, batch_size rows each,
               paged by the stable row identifier (OFFSET/FETCH). Each batch
               is SELECT ... INTO in its own transaction.
  TRUNCATING   TRUNCATE TABLE on the target. Simulation: rolled back.
               Commit: committed, the point of no return.
  REINSERTING  Buffers in ascending order. Commit: INSERT ... SELECT back into
               the target + DROP buffer, one transaction per batch.
               Simulation: scan the buffer, then drop it.

State machine::

    IDLE -> COPYING -> TRUNCATING -> REINSERTING -> DONE
              \\            \\              \\
               +------------+--------------+--> FAILED

Paging order must be unique: the timestamp column is not, and OFFSET paging
over a non-unique order can skip or duplicate rows between batches.

Failure handling:
  - Before the truncate commits, the target table is intact; buffers created
    so far are dropped.
  - After the truncate commits, batches already reinserted stay applied.
    Buffers not yet written back are left in place (they are the only copy
    of those rows) and named in the BatchError. TEMPORARY buffers are lost
    when the session ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import config
from cleanup.buffer_strategy import BufferKind, buffer_name
from cleanup.errors import BatchError
from cleanup.retention_filter import RetentionFilter
from cleanup.session import Stopwatch, local_transaction
from identifiers import column_list, quote_identifier
from schema.inspector import TableSchema

logger = logging.getLogger(__name__)


class MoverState(Enum):
    IDLE = "IDLE"
    COPYING = "COPYING"
    TRUNCATING = "TRUNCATING"
    REINSERTING = "REINSERTING"
    DONE = "DONE"
    FAILED = "FAILED"


_TRANSITIONS: dict[MoverState, set[MoverState]] = {
    MoverState.IDLE: {MoverState.COPYING},
    MoverState.COPYING: {MoverState.TRUNCATING, MoverState.FAILED},
    MoverState.TRUNCATING: {MoverState.REINSERTING, MoverState.FAILED},
    MoverState.REINSERTING: {MoverState.DONE, MoverState.FAILED},
    MoverState.DONE: set(),
    MoverState.FAILED: set(),
}


@dataclass
class PhaseTimings:
    """Wall-clock duration of each phase, in milliseconds."""

    copy_ms: int = 0
    truncate_ms: int = 0
    reinsert_ms: int = 0

    @property
    def total_ms(self) -> int:
        return self.copy_ms + self.truncate_ms + self.reinsert_ms


@dataclass
class MoveResult:
    """Outcome of a completed BatchMover run."""

    simulation: bool
    buffer_kind: BufferKind
    batches: int = 0
    rows_copied: int = 0
    rows_reinserted: int = 0
    rows_scanned: int = 0
    timings: PhaseTimings = field(default_factory=PhaseTimings)


class BatchMover:
    """Single-use executor of the copy -> truncate -> reinsert pipeline.

    Usage::

        mover = BatchMover(conn, table_schema, retention_filter,
                           buffer_kind=BufferKind.DURABLE, simulation=False)
        result = mover.run(retained_count=3_000_000)
    """

    def __init__(
        self,
        conn,
        table_schema: TableSchema,
        retention_filter: RetentionFilter,
        *,
        buffer_kind: BufferKind,
        simulation: bool,
        batch_size: int = config.CLEANUP_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._conn = conn
        self._table = table_schema
        self._filter = retention_filter
        self._kind = buffer_kind
        self._simulation = simulation
        self._batch_size = batch_size
        self._state = MoverState.IDLE
        # Quoted names of buffers that exist and have not been reinserted yet,
        # in ascending batch order.
        self._buffers: list[str] = []

    @property
    def state(self) -> MoverState:
        return self._state

    def _advance(self, new_state: MoverState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal mover transition {self._state.value} -> {new_state.value}"
            )
        logger.debug("Mover %s: %s -> %s", self._table.display_name,
                     self._state.value, new_state.value)
        self._state = new_state

    def run(self, retained_count: int) -> MoveResult:
        """Execute all three phases.

        Args:
            retained_count: Rows matching the retained predicate, as counted
                just before the run. ``0`` still truncates the table.

        Returns:
            MoveResult with batch/row counts and phase timings.

        Raises:
            BatchError: On any failure in any phase (state becomes FAILED).
                KeyboardInterrupt and SystemExit get the same buffer cleanup
                and propagate unchanged.
        """
        if self._state is not MoverState.IDLE:
            raise RuntimeError("BatchMover instances are single-use")
        if retained_count < 0:
            raise ValueError(f"retained_count must be >= 0, got {retained_count}")

        result = MoveResult(simulation=self._simulation, buffer_kind=self._kind)
        mode = "SIMULATION" if self._simulation else "COMMIT"
        logger.info(
            "[%s] Moving %d retained rows of %s in batches of %d (%s buffers)",
            mode, retained_count, self._table.display_name,
            self._batch_size, self._kind.name,
        )

        self._advance(MoverState.COPYING)
        with Stopwatch() as sw:
            self._copy_phase(retained_count, result)
        result.timings.copy_ms = sw.elapsed_ms
        logger.info("[%s] Copy from main table: %d ms (%d batches, %d rows)",
                    mode, result.timings.copy_ms, result.batches, result.rows_copied)

        self._advance(MoverState.TRUNCATING)
        with Stopwatch() as sw:
            self._truncate_phase()
        result.timings.truncate_ms = sw.elapsed_ms
        logger.info("[%s] Truncate table: %d ms", mode, result.timings.truncate_ms)

        self._advance(MoverState.REINSERTING)
        with Stopwatch() as sw:
            self._reinsert_phase(result)
        result.timings.reinsert_ms = sw.elapsed_ms
        logger.info("[%s] Copy back data: %d ms (%d rows)", mode,
                    result.timings.reinsert_ms,
                    result.rows_scanned if self._simulation else result.rows_reinserted)

        self._advance(MoverState.DONE)
        return result

    # ------------------------------------------------------------------
    # Phase 1: extract
    # ------------------------------------------------------------------

    def _copy_phase(self, retained_count: int, result: MoveResult) -> None:
        ts = self._table
        cols = column_list(ts.columns)
        order_by = ", ".join(quote_identifier(c) for c in ts.row_id_columns)
        clause, params = self._filter.predicate(
            ts.partition_column, ts.date_column, expired=False,
        )

        offset = 0
        batch_index = 1
        while offset < retained_count:
            name = buffer_name(self._kind, ts.schema, ts.table, batch_index)
            try:
                # Leftover from an aborted run with the same index.
                self._drop_buffer(name)
                with local_transaction(self._conn) as cur:
                    cur.execute(
                        f"SELECT {cols} INTO {name} "
                        f"FROM {ts.qualified_name} WHERE {clause} "
                        f"ORDER BY {order_by} "
                        f"OFFSET ? ROWS FETCH NEXT ? ROWS ONLY",
                        *params, offset, self._batch_size,
                    )
                    copied = cur.rowcount
                self._buffers.append(name)
                if copied is None or copied < 0:
                    copied = self._count_buffer(name)
            except Exception as exc:
                self._fail_before_truncate()
                raise BatchError(
                    f"Copy into buffer {name} failed for {ts.display_name}",
                    phase=MoverState.COPYING.value,
                    batch_index=batch_index,
                    batches_completed=batch_index - 1,
                ) from exc
            except BaseException:
                self._fail_before_truncate()
                raise

            result.rows_copied += copied
            result.batches += 1
            logger.info(
                "Batch %d: copied %d rows into %s (offset %d)",
                batch_index, copied, name, offset,
            )
            offset += self._batch_size
            batch_index += 1

        if result.rows_copied != retained_count:
            self._fail_before_truncate()
            raise BatchError(
                f"Copied {result.rows_copied} rows but {retained_count} were "
                f"counted as retained in {ts.display_name}; table changed during "
                f"the run. Aborting before truncate",
                phase=MoverState.COPYING.value,
                batches_completed=result.batches,
            )

    # ------------------------------------------------------------------
    # Phase 2: destroy
    # ------------------------------------------------------------------

    def _truncate_phase(self) -> None:
        try:
            with local_transaction(self._conn, rollback_only=self._simulation) as cur:
                cur.execute(f"TRUNCATE TABLE {self._table.qualified_name}")
        except Exception as exc:
            # The truncate transaction rolled back: target table is intact.
            self._fail_before_truncate()
            raise BatchError(
                f"Truncate of {self._table.display_name} failed",
                phase=MoverState.TRUNCATING.value,
            ) from exc
        except BaseException:
            self._fail_before_truncate()
            raise

        if self._simulation:
            logger.info("[SIMULATION] Truncate of %s rolled back",
                        self._table.display_name)
        else:
            logger.warning("Truncate of %s committed", self._table.display_name)

    # ------------------------------------------------------------------
    # Phase 3: rebuild
    # ------------------------------------------------------------------

    def _reinsert_phase(self, result: MoveResult) -> None:
        ts = self._table
        cols = column_list(ts.columns)
        completed = 0

        while self._buffers:
            name = self._buffers[0]
            batch_index = completed + 1
            try:
                if self._simulation:
                    result.rows_scanned += self._count_buffer(name)
                    self._drop_buffer(name)
                else:
                    result.rows_reinserted += self._reinsert_buffer(name, cols)
            except Exception as exc:
                remaining = self._fail_after_truncate(batch_index, result)
                raise BatchError(
                    f"Reinsert from buffer {name} into {ts.display_name} failed",
                    phase=MoverState.REINSERTING.value,
                    batch_index=batch_index,
                    batches_completed=completed,
                    rows_reinserted=result.rows_reinserted,
                    remaining_buffers=remaining,
                ) from exc
            except BaseException:
                self._fail_after_truncate(batch_index, result)
                raise

            self._buffers.pop(0)
            completed += 1
            logger.info("Batch %d: %s %s", batch_index,
                        "scanned" if self._simulation else "reinserted", name)

    def _reinsert_buffer(self, name: str, cols: str) -> int:
        """INSERT the buffer into the target and drop it, in one transaction."""
        ts = self._table
        identity = ts.identity_column is not None
        with local_transaction(self._conn) as cur:
            if identity:
                cur.execute(f"SET IDENTITY_INSERT {ts.qualified_name} ON")
            try:
                cur.execute(
                    f"INSERT INTO {ts.qualified_name} WITH (TABLOCK) ({cols}) "
                    f"SELECT {cols} FROM {name}"
                )
                inserted = cur.rowcount
            finally:
                if identity:
                    cur.execute(f"SET IDENTITY_INSERT {ts.qualified_name} OFF")
            cur.execute(f"DROP TABLE {name}")
        return max(inserted or 0, 0)

    # ------------------------------------------------------------------
    # Buffer helpers
    # ------------------------------------------------------------------

    def _count_buffer(self, name: str) -> int:
        cursor = self._conn.cursor()
        try:
            cursor.execute(f"SELECT COUNT_BIG(*) FROM {name}")
            row = cursor.fetchone()
        finally:
            cursor.close()
        return int(row[0]) if row and row[0] is not None else 0

    def _drop_buffer(self, name: str) -> None:
        cursor = self._conn.cursor()
        try:
            cursor.execute(f"DROP TABLE IF EXISTS {name}")
        finally:
            cursor.close()

    def _drop_all_buffers(self) -> None:
        while self._buffers:
            name = self._buffers.pop()
            try:
                self._drop_buffer(name)
            except Exception:
                logger.warning("Failed to drop buffer table %s", name, exc_info=True)

    def _fail_before_truncate(self) -> None:
        self._advance(MoverState.FAILED)
        self._drop_all_buffers()

    def _fail_after_truncate(self, batch_index: int, result: MoveResult) -> list[str]:
        """Mark FAILED and return the buffers left holding unapplied rows."""
        self._advance(MoverState.FAILED)
        if self._simulation:
            # Truncate was rolled back, nothing to preserve.
            self._drop_all_buffers()
            return []
        remaining = list(self._buffers)
        logger.critical(
            "Reinsert into %s failed at batch %d after truncate "
            "committed. %d rows reinserted, %d buffer(s) NOT applied "
            "and left in place: %s%s",
            self._table.display_name, batch_index, result.rows_reinserted,
            len(remaining), ", ".join(remaining),
            " (TEMPORARY buffers are lost when this session closes)"
            if self._kind is BufferKind.TEMPORARY else "",
        )
        return remaining
