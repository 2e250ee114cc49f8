"""Change Data Capture / Change Tracking suspension around the table rewrite.

TRUNCATE TABLE is rejected on a table enabled for CDC, and the reinsert of
millions of rows would otherwise flood both change feeds. The controller:

  1. capture_state(): reads, once, whether CDC and Change Tracking are on,
     plus the options needed to switch them back on identically (capture
     instance names, role, net-changes index, filegroup; TRACK_COLUMNS_UPDATED).
  2. disable(): turns off whatever capture_state() found on.
  3. restore(): turns back on exactly what capture_state() found on, in both
     simulation and commit mode.

Any failure to toggle raises TrackingToggleError. Disabling CDC drops the
capture instances' change tables; consumers of those feeds must treat the
cleanup window as a reset point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cleanup.errors import TrackingToggleError
from schema.inspector import TableSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureInstance:
    """One CDC capture instance as recorded in cdc.change_tables."""

    name: str | None
    role_name: str | None = None
    supports_net_changes: bool = False
    index_name: str | None = None
    filegroup_name: str | None = None


@dataclass(frozen=True)
class TrackingState:
    """Tracking configuration of a table before the run."""

    cdc_enabled: bool = False
    change_tracking_enabled: bool = False
    track_columns_updated: bool = False
    capture_instances: tuple[CaptureInstance, ...] = ()

    @property
    def any_enabled(self) -> bool:
        return self.cdc_enabled or self.change_tracking_enabled


def capture_state(conn, table_schema: TableSchema) -> TrackingState:
    """Read current CDC / Change Tracking enablement for the table.

    Raises:
        TrackingToggleError: If the catalog cannot be read.
    """
    qualified = table_schema.qualified_name
    cursor = conn.cursor()
    try:
        cursor.execute(
            "SELECT t.is_tracked_by_cdc, "
            "       CASE WHEN ct.object_id IS NULL THEN 0 ELSE 1 END, "
            "       ct.is_track_columns_updated_on "
            "FROM sys.tables t "
            "LEFT JOIN sys.change_tracking_tables ct ON ct.object_id = t.object_id "
            "WHERE t.object_id = OBJECT_ID(?)",
            qualified,
        )
        row = cursor.fetchone()

        instances: list[CaptureInstance] = []
        if row is not None and row[0]:
            cursor.execute(
                "SELECT capture_instance, role_name, supports_net_changes, "
                "       index_name, filegroup_name "
                "FROM cdc.change_tables "
                "WHERE source_object_id = OBJECT_ID(?) "
                "ORDER BY create_date",
                qualified,
            )
            instances = [
                CaptureInstance(
                    name=r[0],
                    role_name=r[1],
                    supports_net_changes=bool(r[2]),
                    index_name=r[3],
                    filegroup_name=r[4],
                )
                for r in cursor.fetchall()
            ]
    except Exception as exc:
        raise TrackingToggleError(
            f"Could not read tracking state of {table_schema.display_name}"
        ) from exc
    finally:
        cursor.close()

    if row is None:
        state = TrackingState()
    else:
        state = TrackingState(
            cdc_enabled=bool(row[0]),
            change_tracking_enabled=bool(row[1]),
            track_columns_updated=bool(row[2]),
            capture_instances=tuple(instances),
        )

    logger.info(
        "Tracking state of %s: CDC=%s (%d capture instance(s)), change tracking=%s",
        table_schema.display_name, state.cdc_enabled,
        len(state.capture_instances), state.change_tracking_enabled,
    )
    return state


def disable(conn, table_schema: TableSchema, state: TrackingState) -> None:
    """Turn off the mechanisms that ``state`` records as enabled.

    If CDC was switched off but switching off Change Tracking then fails,
    CDC is switched back on before raising so the table is left as found.

    Raises:
        TrackingToggleError: If either mechanism cannot be disabled.
    """
    if state.cdc_enabled:
        try:
            _disable_cdc(conn, table_schema)
        except Exception as exc:
            raise TrackingToggleError(
                f"Could not disable CDC on {table_schema.display_name}"
            ) from exc
        logger.warning(
            "CDC disabled on %s; change tables for %s were dropped",
            table_schema.display_name,
            ", ".join(i.name or "?" for i in state.capture_instances) or "all instances",
        )

    if state.change_tracking_enabled:
        try:
            _disable_change_tracking(conn, table_schema)
        except Exception as exc:
            if state.cdc_enabled:
                try:
                    _enable_cdc(conn, table_schema, state)
                except Exception:
                    logger.exception(
                        "Could not re-enable CDC on %s after change tracking "
                        "disable failed", table_schema.display_name,
                    )
                    raise TrackingToggleError(
                        f"Could not disable change tracking on "
                        f"{table_schema.display_name}, and CDC could not be "
                        f"re-enabled; CDC is now OFF"
                    ) from exc
            raise TrackingToggleError(
                f"Could not disable change tracking on {table_schema.display_name}"
            ) from exc
        logger.info("Change tracking disabled on %s", table_schema.display_name)


def restore(conn, table_schema: TableSchema, state: TrackingState) -> None:
    """Turn back on the mechanisms that ``state`` records as enabled.

    Both mechanisms are attempted even if the first fails; all failures are
    reported in one TrackingToggleError.

    Raises:
        TrackingToggleError: If any mechanism cannot be restored.
    """
    failures: list[str] = []
    first_error: Exception | None = None

    if state.cdc_enabled:
        try:
            _enable_cdc(conn, table_schema, state)
            logger.info("CDC re-enabled on %s", table_schema.display_name)
        except Exception as exc:
            logger.error(
                "Could not re-enable CDC on %s", table_schema.display_name,
                exc_info=True,
            )
            failures.append("CDC")
            first_error = first_error or exc

    if state.change_tracking_enabled:
        try:
            _enable_change_tracking(conn, table_schema, state.track_columns_updated)
            logger.info("Change tracking re-enabled on %s", table_schema.display_name)
        except Exception as exc:
            logger.error(
                "Could not re-enable change tracking on %s",
                table_schema.display_name, exc_info=True,
            )
            failures.append("change tracking")
            first_error = first_error or exc

    if failures:
        raise TrackingToggleError(
            f"Could not restore {' and '.join(failures)} on "
            f"{table_schema.display_name}; tracking configuration now differs "
            f"from before the run"
        ) from first_error


# ---------------------------------------------------------------------------
# Toggle primitives
# ---------------------------------------------------------------------------

def _disable_cdc(conn, table_schema: TableSchema) -> None:
    cursor = conn.cursor()
    try:
        cursor.execute(
            "EXEC sys.sp_cdc_disable_table "
            "@source_schema = ?, @source_name = ?, @capture_instance = ?",
            table_schema.schema, table_schema.table, "all",
        )
    finally:
        cursor.close()


def _enable_cdc(conn, table_schema: TableSchema, state: TrackingState) -> None:
    # No recorded instance (catalog row missing): enable with defaults.
    instances = state.capture_instances or (CaptureInstance(name=None),)
    cursor = conn.cursor()
    try:
        for instance in instances:
            cursor.execute(
                "EXEC sys.sp_cdc_enable_table "
                "@source_schema = ?, @source_name = ?, @role_name = ?, "
                "@capture_instance = ?, @supports_net_changes = ?, "
                "@index_name = ?, @filegroup_name = ?",
                table_schema.schema,
                table_schema.table,
                instance.role_name,
                instance.name,
                1 if instance.supports_net_changes else 0,
                instance.index_name,
                instance.filegroup_name,
            )
    finally:
        cursor.close()


def _disable_change_tracking(conn, table_schema: TableSchema) -> None:
    cursor = conn.cursor()
    try:
        cursor.execute(
            f"ALTER TABLE {table_schema.qualified_name} DISABLE CHANGE_TRACKING"
        )
    finally:
        cursor.close()


def _enable_change_tracking(
    conn,
    table_schema: TableSchema,
    track_columns_updated: bool,
) -> None:
    option = "ON" if track_columns_updated else "OFF"
    cursor = conn.cursor()
    try:
        cursor.execute(
            f"ALTER TABLE {table_schema.qualified_name} ENABLE CHANGE_TRACKING "
            f"WITH (TRACK_COLUMNS_UPDATED = {option})"
        )
    finally:
        cursor.close()
