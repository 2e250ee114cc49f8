"""Session helpers: per-batch local transactions and phase timing."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@contextmanager
def local_transaction(conn, *, rollback_only: bool = False):
    """Run the block inside one transaction on ``conn`` and yield a cursor.

    Switches the (autocommit) connection to manual commit for the duration of
    the block. On normal exit the transaction is committed, or rolled back
    when ``rollback_only`` is set (simulation mode measures the statement's
    cost without keeping its effect). On any error, including
    KeyboardInterrupt, it is rolled back before autocommit is restored and
    the error propagates.

    Usage::

        with local_transaction(conn) as cur:
            cur.execute("TRUNCATE TABLE [dbo].[CUSTTRANS]")
    """
    conn.autocommit = False
    cursor = conn.cursor()
    try:
        yield cursor
        if rollback_only:
            conn.rollback()
        else:
            conn.commit()
    except BaseException:
        # Re-enabling autocommit commits an open transaction.
        try:
            conn.rollback()
        except Exception:
            # Dead session: the server rolls back on disconnect. Keep the
            # original error.
            logger.warning("Rollback failed after error", exc_info=True)
        raise
    finally:
        try:
            cursor.close()
        finally:
            try:
                conn.autocommit = True
            except Exception:
                logger.debug("Could not restore autocommit", exc_info=True)


class Stopwatch:
    """Wall-clock timer in milliseconds.

    Usage::

        with Stopwatch() as sw:
            do_work()
        logger.info("took %d ms", sw.elapsed_ms)
    """

    def __init__(self) -> None:
        self._start: float | None = None
        self._stop: float | None = None

    def __enter__(self) -> Stopwatch:
        self._start = time.monotonic()
        self._stop = None
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        if self._start is None:
            return 0
        end = self._stop if self._stop is not None else time.monotonic()
        return int((end - self._start) * 1000)
