from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from apps.adsheet.core.columns import (
    COLUMN_BY_FIELD,
    FIELD_DEFAULTS,
    Column,
    row_payload,
)
from apps.adsheet.sync.client import CreatedRow, PersistenceClient, PersistenceError
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.identity import (
    FAILED_LABEL,
    LOADING_LABEL,
    RowOrigin,
    find_marker,
    find_server_id,
    marker_timestamp,
    new_marker,
    promote,
    temp_rows,
)
from apps.adsheet.sync.notices import (
    CREATE_FAILED,
    CREATE_SUCCEEDED,
    SAVE_FAILED,
    Notice,
    NoticeLevel,
    Notifier,
)
from apps.adsheet.sync.tasks import TaskTracker
from apps.adsheet.sync.tracker import TempRowRecord, TempRowRegistry, TempRowStatus
from shared.constants import (
    SYNC_FOLLOW_UP_DELAY,
    SYNC_MAX_CREATE_RETRIES,
    SYNC_PHANTOM_GRACE,
)
from shared.logger import get_logger

logger = get_logger("AdSheet Reconciler")


@dataclass
class ReconcileResult:
    promoted: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    missed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    follow_ups: list[int] = field(default_factory=list)


class TempRowReconciler:
    """
    Creates optimistic rows, persists them through bulk-create and swaps
    their markers for server identities when the response arrives.

    Rows are always located by marker, never by position: other rows may be
    inserted, deleted or reloaded while a bulk-create is in flight.
    """

    def __init__(
        self,
        grid: SheetGrid,
        registry: TempRowRegistry,
        client: PersistenceClient,
        *,
        tasks: TaskTracker,
        notify: Notifier | None = None,
        request_reload: Callable[[], None] | None = None,
        follow_up_delay: float = SYNC_FOLLOW_UP_DELAY,
        max_retries: int = SYNC_MAX_CREATE_RETRIES,
    ) -> None:
        self.grid = grid
        self.registry = registry
        self.client = client
        self.tasks = tasks
        self._notify = notify or (lambda notice: None)
        self._request_reload = request_reload or (lambda: None)
        self.follow_up_delay = follow_up_delay
        self.max_retries = max_retries

    # ============================================================
    # OPTIMISTIC ROWS
    # ============================================================

    def insert_temp_rows(
        self,
        count: int,
        origin: RowOrigin,
        *,
        index: int | None = None,
    ) -> list[str]:
        if count <= 0:
            return []
        markers: list[str] = []
        with self.grid.batch():
            rows = self.grid.insert_rows(index, count)
            cells: list[tuple[int, int, Any]] = []
            for row in rows:
                marker = new_marker(origin)
                markers.append(marker)
                cells.append((row, Column.TEMP_MARKER, marker))
                cells.append((row, Column.DISPLAY_ID, LOADING_LABEL))
            self.grid.set_cells(cells, "system")
        for marker, row in zip(markers, rows):
            self.registry.register(marker, row)
        self.refresh_indices()
        return markers

    def refresh_indices(self) -> dict[str, int]:
        positions = temp_rows(self.grid)
        for record in self.registry.records():
            row = positions.get(record.marker)
            if row is not None:
                record.row_index = row
        return positions

    def _retryable(self, record: TempRowRecord) -> bool:
        return (
            record.status is TempRowStatus.FAILED
            and record.retry_count <= self.max_retries
        )

    def pending_markers(self) -> list[str]:
        positions = self.refresh_indices()
        # Untracked marked rows (a paste that bypassed the hooks) join in.
        for marker, row in positions.items():
            if marker not in self.registry:
                self.registry.register(marker, row)
        return [
            record.marker
            for record in self.registry.records()
            if record.marker in positions
            and (record.status is TempRowStatus.PENDING or self._retryable(record))
        ]

    # ============================================================
    # SYNC
    # ============================================================

    async def sync_pending(self, markers: Iterable[str] | None = None) -> ReconcileResult:
        eligible = self.pending_markers()
        if markers is not None:
            wanted = set(markers)
            eligible = [marker for marker in eligible if marker in wanted]
        if not eligible:
            return ReconcileResult()

        positions = temp_rows(self.grid)
        rows: list[tuple[str, dict[str, Any]]] = []
        cells: list[tuple[int, int, Any]] = []
        for marker in eligible:
            record = self.registry.get(marker)
            row = positions[marker]
            values = row_payload(self.grid.get_data_at_row(row))
            record.sent = values
            record.status = TempRowStatus.SYNCING
            record.needs_sync = False
            rows.append((marker, values))
            cells.append((row, Column.DISPLAY_ID, LOADING_LABEL))
        with self.grid.batch():
            self.grid.set_cells(cells, "system")

        logger.info(
            "Bulk creating temp rows",
            extra={"extra_fields": {"count": len(rows), "session_id": self.client.session_id}},
        )
        try:
            created = await self.client.create_batch(rows)
        except PersistenceError as exc:
            failed = [marker for marker, _ in rows]
            self._mark_failed(failed, str(exc))
            return ReconcileResult(failed=failed)

        result = self.apply(created)

        returned = {item.temporary_marker for item in created}
        unanswered = [marker for marker, _ in rows if marker not in returned]
        if unanswered:
            # The server may have stored them; a reload shows the truth.
            logger.warning(
                "Bulk create response missing rows",
                extra={"extra_fields": {"markers": unanswered}},
            )
            for marker in unanswered:
                self.registry.discard(marker)
            result.missed.extend(unanswered)
            self._request_reload()

        created_count = len(result.promoted) + len(result.merged)
        if created_count:
            self._notify(
                Notice(
                    NoticeLevel.SUCCESS,
                    CREATE_SUCCEEDED,
                    f"Đã tạo {created_count} dòng",
                )
            )
        return result

    def apply(self, created: Iterable[CreatedRow]) -> ReconcileResult:
        result = ReconcileResult()
        with self.grid.batch():
            for item in created:
                self._apply_one(item, result)
        self.refresh_indices()
        if result.merged:
            self._request_reload()
        return result

    def _apply_one(self, item: CreatedRow, result: ReconcileResult) -> None:
        marker = item.temporary_marker
        record = self.registry.get(marker)
        row = find_marker(self.grid, marker)

        if row is None:
            self.registry.discard(marker)
            if find_server_id(self.grid, item.server_id) is not None:
                return
            logger.warning(
                "Reconciliation miss",
                extra={
                    "extra_fields": {
                        "marker": marker,
                        "server_id": item.server_id,
                    }
                },
            )
            result.missed.append(marker)
            return

        sent = record.sent if record and record.sent is not None else dict(FIELD_DEFAULTS)
        current = row_payload(self.grid.get_data_at_row(row))
        typed = {
            key: value
            for key, value in current.items()
            if value != sent.get(key, FIELD_DEFAULTS[key])
        }

        existing = find_server_id(self.grid, item.server_id, skip=row)
        if existing is not None:
            # A reload already brought the stored row in; keep one copy.
            if typed:
                self.grid.set_cells(
                    [(existing, COLUMN_BY_FIELD[key], value) for key, value in typed.items()],
                    "reconcile",
                )
            self.grid.delete_rows([row])
            self.registry.discard(marker)
            result.merged.append(marker)
        else:
            promote(self.grid, marker, item.server_id, item.sequence_number, item.owner_id)
            if record is not None:
                record.status = TempRowStatus.DONE
            self.registry.discard(marker)
            result.promoted.append(marker)

        if typed:
            self.tasks.spawn(
                self._follow_up(item.server_id),
                name=f"follow-up-{item.server_id}",
            )
            result.follow_ups.append(item.server_id)

    async def _follow_up(self, server_id: int) -> None:
        await asyncio.sleep(self.follow_up_delay)
        row = find_server_id(self.grid, server_id)
        if row is None:
            logger.warning(
                "Follow-up save skipped, row gone",
                extra={"extra_fields": {"server_id": server_id}},
            )
            return
        values = row_payload(self.grid.get_data_at_row(row))
        try:
            await self.client.patch_record(server_id, values)
        except PersistenceError as exc:
            logger.error(
                "Follow-up save failed",
                extra={"extra_fields": {"server_id": server_id, "error": str(exc)}},
            )
            self._notify(Notice(NoticeLevel.ERROR, SAVE_FAILED, str(exc), retryable=True))

    def _mark_failed(self, markers: list[str], error: str) -> None:
        cells: list[tuple[int, int, Any]] = []
        retryable = False
        for marker in markers:
            record = self.registry.get(marker)
            if record is None:
                continue
            record.status = TempRowStatus.FAILED
            record.retry_count += 1
            retryable = retryable or record.retry_count <= self.max_retries
            row = find_marker(self.grid, marker)
            if row is not None:
                cells.append((row, Column.DISPLAY_ID, FAILED_LABEL))
        with self.grid.batch():
            self.grid.set_cells(cells, "system")

        logger.error(
            "Bulk create failed",
            extra={"extra_fields": {"markers": markers, "error": error}},
        )
        self._notify(Notice(NoticeLevel.ERROR, CREATE_FAILED, error, retryable=retryable))

    # ============================================================
    # CLEANUP
    # ============================================================

    def cleanup_phantoms(
        self,
        *,
        grace: float = SYNC_PHANTOM_GRACE,
        now: float | None = None,
    ) -> int:
        """
        Remove marked rows with no real identity that this session does not
        track, or that outlived the grace period without syncing.
        """
        now = time.time() if now is None else now
        doomed: list[int] = []
        for marker, row in temp_rows(self.grid).items():
            record = self.registry.get(marker)
            created_at = marker_timestamp(marker)
            stale = created_at is None or now - created_at > grace
            if record is None or (stale and record.status is not TempRowStatus.SYNCING):
                doomed.append(row)
                self.registry.discard(marker)
        removed = self.grid.delete_rows(doomed)
        if removed:
            logger.info(
                "Removed phantom temp rows",
                extra={"extra_fields": {"count": removed}},
            )
            self.refresh_indices()
        return removed

    def surviving_rows(self) -> list[list[Any]]:
        """
        Temp rows that must outlive a full reload because their create is
        pending, in flight or awaiting retry. Everything else is dropped.
        """
        positions = temp_rows(self.grid)
        keep: list[list[Any]] = []
        for record in self.registry.records():
            row = positions.get(record.marker)
            alive = record.status in (TempRowStatus.PENDING, TempRowStatus.SYNCING) or self._retryable(record)
            if row is None or not alive:
                self.registry.discard(record.marker)
                continue
            keep.append(self.grid.get_data_at_row(row))
        return keep
