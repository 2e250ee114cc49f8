"""Exceptions raised by a keep-only-records run.

Every exception here is fatal to the run and is raised before the results log
row is written, so a missing DBCleanupResultsLog row means the attempt failed.
"""

from __future__ import annotations


class KeepOnlyError(Exception):
    """Base class for cleanup run failures."""


class SchemaError(KeepOnlyError):
    """Target table lacks a column the cleanup depends on.

    Raised by the schema inspector before any tracking toggle or data
    movement, so the table is untouched.
    """


class TrackingToggleError(KeepOnlyError):
    """Disabling or restoring CDC / Change Tracking failed.

    Restore failures are never logged-and-ignored: a table whose tracking
    configuration diverges from what it was before the run breaks downstream
    change-feed consumers.
    """


class GuardError(KeepOnlyError):
    """A pre-flight guard found the run unsafe (override with --force)."""


class BatchError(KeepOnlyError):
    """Failure while copying, truncating or reinserting a batch.

    Attributes:
        phase: Mover state the failure happened in (COPYING, TRUNCATING,
            or REINSERTING; a post-copy row count mismatch is
            reported as COPYING).
        batch_index: 1-based buffer index being processed, or None for the
            truncate step.
        batches_completed: Buffers fully processed in ``phase`` before the
            failure.
        rows_reinserted: Rows committed back into the target table so far.
            Non-zero means the table is partially rebuilt and needs manual
            reconciliation.
        remaining_buffers: Buffer tables left in place because they hold rows
            not yet written back.
    """

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        batch_index: int | None = None,
        batches_completed: int = 0,
        rows_reinserted: int = 0,
        remaining_buffers: list[str] | None = None,
    ) -> None:
        self.phase = phase
        self.batch_index = batch_index
        self.batches_completed = batches_completed
        self.rows_reinserted = rows_reinserted
        self.remaining_buffers = list(remaining_buffers or [])
        detail = (
            f"phase={phase}, batch={batch_index}, "
            f"batches_completed={batches_completed}, "
            f"rows_reinserted={rows_reinserted}"
        )
        if self.remaining_buffers:
            detail += f", remaining_buffers={', '.join(self.remaining_buffers)}"
        super().__init__(f"{message} ({detail})")
