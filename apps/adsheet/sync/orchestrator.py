from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable

from apps.adsheet.core.columns import Column, display_id, has_user_data, row_from_record
from apps.adsheet.core.events import BroadcastEvent
from apps.adsheet.sync.channels import PollingChannel, WebSocketChannel
from apps.adsheet.sync.client import PersistenceClient, PersistenceError
from apps.adsheet.sync.debounce import DebouncedQueue
from apps.adsheet.sync.grid import USER_SOURCES, CellChange, SheetGrid
from apps.adsheet.sync.identity import (
    FAILED_LABEL,
    LOADING_LABEL,
    Permanent,
    RowOrigin,
    Temporary,
    assign_marker,
    find_server_id,
    identity_of,
    is_optimistic,
)
from apps.adsheet.sync.listener import BroadcastListener, HandleOutcome
from apps.adsheet.sync.notices import (
    RELOAD_FAILED,
    SAVE_FAILED,
    Notice,
    NoticeLevel,
    Notifier,
)
from apps.adsheet.sync.reconciler import TempRowReconciler
from apps.adsheet.sync.resolver import RowResolver
from apps.adsheet.sync.session import SessionScope
from apps.adsheet.sync.settings import SyncSettings
from apps.adsheet.sync.tasks import TaskTracker
from apps.adsheet.sync.tracker import (
    LocalEditTracker,
    PendingEdit,
    RecordOutcome,
    TempRowRegistry,
    TempRowStatus,
    merge_edits,
)
from shared.logger import get_logger

logger = get_logger("AdSheet Grid")

# Cell metadata key carrying the last save error of a row.
SAVE_ERROR = "save_error"


class GridOrchestrator:
    """
    Owns one mounted ad-account grid and wires the sync components into
    its lifecycle hooks.

    Usage::

        client = PersistenceClient(base_url, auth, new_session_id(), api_key=key, tenant_id=tenant)
        grid = GridOrchestrator(client)
        await grid.start()
        polling = grid.polling_channel()
        asyncio.create_task(polling.run())
    """

    def __init__(
        self,
        client: PersistenceClient,
        *,
        grid: SheetGrid | None = None,
        settings: SyncSettings | None = None,
        notify: Notifier | None = None,
        escape_hatch: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self.client = client
        self.session = SessionScope(client.session_id)
        self.settings = settings or SyncSettings.from_env()
        self.grid = grid or SheetGrid()
        self.owner_id = client.auth.owner_id
        self.notices: list[Notice] = []
        self.stale = False
        self._notify = notify
        self._escape_hatch = escape_hatch
        self._sequence_by_id: dict[int, int] = {}
        self.save_errors: dict[int, str] = {}
        self._editing_temp_row = False
        self._reload_lock = asyncio.Lock()
        self._reload_again = False

        self.tasks = TaskTracker()
        self.registry = TempRowRegistry()
        self.save_queue: DebouncedQueue[tuple[int, str], PendingEdit] = DebouncedQueue(
            self._save,
            self.settings.save_delay,
            merge=merge_edits,
            name="field-edits",
        )
        self.temp_queue: DebouncedQueue[str, str] = DebouncedQueue(
            self._sync_temp_rows,
            self.settings.temp_row_delay,
            name="temp-rows",
        )
        self.tracker = LocalEditTracker(self.grid, self.registry, self.save_queue)
        self.reconciler = TempRowReconciler(
            self.grid,
            self.registry,
            client,
            tasks=self.tasks,
            notify=self.notify,
            request_reload=self.request_reload,
            follow_up_delay=self.settings.follow_up_delay,
            max_retries=self.settings.max_create_retries,
        )
        self.listener = BroadcastListener(
            self.grid,
            self.session,
            self.reload,
            resolver=RowResolver(),
        )
        self._attach()

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def _attach(self) -> None:
        self.grid.add_hook("after_change", self.on_cell_change)
        self.grid.add_hook("before_paste", self.on_before_paste)
        self.grid.add_hook("after_paste", self.on_after_paste)
        self.grid.add_hook("before_begin_editing", self.on_begin_edit)
        self.grid.add_hook("after_deselect", self.on_end_edit)

    def _detach(self) -> None:
        self.grid.remove_hook("after_change", self.on_cell_change)
        self.grid.remove_hook("before_paste", self.on_before_paste)
        self.grid.remove_hook("after_paste", self.on_after_paste)
        self.grid.remove_hook("before_begin_editing", self.on_begin_edit)
        self.grid.remove_hook("after_deselect", self.on_end_edit)

    def notify(self, notice: Notice) -> None:
        self.notices.append(notice)
        if self._notify is not None:
            self._notify(notice)

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self) -> bool:
        """
        Initial load. Marked rows left over from an earlier mount are
        phantoms and get removed before the dataset is replaced.
        """
        self.reconciler.cleanup_phantoms(grace=self.settings.phantom_grace)
        return await self._load(delay=0)

    async def settle(self) -> None:
        """
        Wait for background work and flush whatever is still queued.
        """
        await self.tasks.settle()
        await self.save_queue.drain()
        await self.temp_queue.drain()
        await self.tasks.settle()

    async def close(self) -> None:
        """
        Unmount. A save already sent is awaited and every queued edit is
        force-flushed before the timers stop.
        """
        self._detach()
        await self.save_queue.drain(force=True)
        self.save_queue.cancel()
        self.temp_queue.cancel()
        await self.tasks.cancel_all()

    # ============================================================
    # GRID HOOKS
    # ============================================================

    def on_cell_change(self, changes: list[CellChange], source: str) -> None:
        if source not in USER_SOURCES:
            return
        temp_markers: list[str] = []
        for change in changes:
            outcome = self.tracker.record_cell(
                change.row,
                change.column,
                change.old_value,
                change.new_value,
                self.session_id,
            )
            if outcome is RecordOutcome.TEMP_TRACKED:
                marker = self.grid.get_data_at_cell(change.row, Column.TEMP_MARKER)
                if marker not in temp_markers:
                    temp_markers.append(marker)
        # Pasted temp rows are created by on_after_paste in one batch.
        if source != "paste":
            for marker in temp_markers:
                self.temp_queue.put(marker, marker)

    def on_before_paste(self, start_row: int, start_column: int, block: list[list[Any]]) -> None:
        overflow = start_row + len(block) - self.grid.count_rows()
        if overflow > 0:
            self.reconciler.insert_temp_rows(overflow, RowOrigin.PASTE)
            logger.info(
                "Inserted rows for paste overflow",
                extra={"extra_fields": {"count": overflow, "start_row": start_row}},
            )

    def on_after_paste(self, changes: list[CellChange]) -> None:
        for row in sorted({change.row for change in changes}):
            if identity_of(self.grid, row) is None and has_user_data(self.grid.get_data_at_row(row)):
                marker = assign_marker(self.grid, row, RowOrigin.PASTE)
                self.registry.register(marker, row)
        if self.reconciler.pending_markers():
            self.tasks.spawn(self.reconciler.sync_pending(), name="paste-create")

    def on_begin_edit(self, row: int, column: int) -> None:
        if is_optimistic(self.grid, row):
            self._editing_temp_row = True
            self.save_queue.pause()
            self.temp_queue.pause()

    def on_end_edit(self) -> None:
        if self._editing_temp_row:
            self._editing_temp_row = False
            self.save_queue.resume()
            self.temp_queue.resume()

    # ============================================================
    # USER ACTIONS
    # ============================================================

    def add_rows(self, count: int = 1) -> list[str]:
        markers = self.reconciler.insert_temp_rows(count, RowOrigin.MANUAL)
        if markers:
            self.tasks.spawn(self.reconciler.sync_pending(markers), name="add-rows")
        return markers

    async def delete_rows(self, rows: Iterable[int]) -> int:
        record_ids: list[int] = []
        indices = sorted(set(rows))
        for row in indices:
            identity = identity_of(self.grid, row)
            if isinstance(identity, Permanent):
                record_ids.append(identity.server_id)
                for column in Column:
                    self.save_queue.discard((identity.server_id, column.field))
                self.save_errors.pop(identity.server_id, None)
            elif isinstance(identity, Temporary):
                self.registry.discard(identity.marker)
                self.temp_queue.discard(identity.marker)

        removed = self.grid.delete_rows(indices)
        self.reconciler.refresh_indices()
        if record_ids:
            try:
                await self.client.delete_records(record_ids)
            except PersistenceError as exc:
                self.notify(Notice(NoticeLevel.ERROR, SAVE_FAILED, str(exc), retryable=True))
                self.request_reload()
        return removed

    async def set_status(self, row: int, status: str) -> None:
        """
        Status changes travel on their own path so other tabs of the same
        user see them immediately.
        """
        identity = identity_of(self.grid, row)
        if not isinstance(identity, Permanent):
            raise ValueError("Status can only be set on saved rows")
        with self.grid.batch():
            self.grid.set_cells([(row, Column.STATUS, status)], "status")
        try:
            await self.client.update_status(identity.server_id, status)
        except PersistenceError as exc:
            self.notify(Notice(NoticeLevel.ERROR, SAVE_FAILED, str(exc), retryable=True))

    async def flush(self) -> bool:
        return await self.save_queue.flush(force=True)

    # ============================================================
    # PERSISTENCE
    # ============================================================

    async def _save(self, edits: list[PendingEdit]) -> None:
        report = await self.client.flush(edits)
        failed_ids = {edit.record_id for edit, _ in report.failed}
        for record_id in {edit.record_id for edit in report.saved} - failed_ids:
            self._mark_save_error(record_id, None)
        if not report.failed:
            return

        abandoned = 0
        for edit, error in report.failed:
            self._mark_save_error(edit.record_id, error)
            attempts = edit.attempts + 1
            if attempts > self.settings.max_save_retries:
                abandoned += 1
                logger.error(
                    "Field save abandoned",
                    extra={
                        "extra_fields": {
                            "record_id": edit.record_id,
                            "field": edit.field,
                            "attempts": edit.attempts,
                            "error": error,
                        }
                    },
                )
                continue
            self.save_queue.requeue(
                edit.key,
                replace(edit, attempts=attempts),
                delay=self.settings.save_retry_delay * attempts,
            )

        message = f"{len(report.failed)}/{len(edits)} ô chưa được lưu"
        if abandoned:
            message += f", {abandoned} ô đã ngừng thử lại"
        self.notify(
            Notice(NoticeLevel.ERROR, SAVE_FAILED, message, retryable=not abandoned)
        )

    def _mark_save_error(self, record_id: int, error: str | None) -> None:
        if error is None:
            if self.save_errors.pop(record_id, None) is None:
                return
        else:
            self.save_errors[record_id] = error
        row = find_server_id(self.grid, record_id)
        if row is not None:
            self.grid.set_cell_meta(row, Column.DISPLAY_ID, SAVE_ERROR, error)

    async def _sync_temp_rows(self, markers: list[str]) -> None:
        await self.reconciler.sync_pending(markers or None)

    # ============================================================
    # BROADCASTS
    # ============================================================

    async def handle_event(self, payload: BroadcastEvent | dict[str, Any] | str) -> HandleOutcome:
        return await self.listener.handle(payload)

    def polling_channel(self) -> PollingChannel:
        return PollingChannel(self.client, self.handle_event, interval=self.settings.poll_interval)

    def websocket_channel(self, url: str, *, api_key: str | None = None, tenant_id: str | None = None) -> WebSocketChannel:
        headers = self.client.auth.headers()
        if api_key:
            headers["X-API-Key"] = api_key
        if tenant_id:
            headers["X-Tenant-Id"] = tenant_id
        return WebSocketChannel(url, self.handle_event, session_id=self.session_id, headers=headers)

    # ============================================================
    # RELOAD
    # ============================================================

    def request_reload(self) -> None:
        self.tasks.spawn(self.reload(), name="reload")

    async def reload(self) -> bool:
        """
        Replace the dataset with the server's. Requests arriving while a
        reload runs collapse into one follow-up reload.
        """
        if self._reload_lock.locked():
            self._reload_again = True
            async with self._reload_lock:
                return not self.stale

        async with self._reload_lock:
            ok = await self._load(delay=self.settings.reload_delay)
            while ok and self._reload_again:
                self._reload_again = False
                ok = await self._load(delay=0)
            self._reload_again = False
            return ok

    async def _load(self, *, delay: float) -> bool:
        if delay:
            await asyncio.sleep(delay)
        try:
            records = await self.client.fetch_records(no_cache=True)
        except PersistenceError as exc:
            logger.error(
                "Reload failed",
                extra={"extra_fields": {"session_id": self.session_id, "error": str(exc)}},
            )
            return await self._escape(exc)
        self._apply_dataset(records)
        self.stale = False
        return True

    def _apply_dataset(self, records: list[dict[str, Any]]) -> None:
        ordered = sorted(
            records,
            key=lambda record: (int(record.get("local_id") or 0), int(record.get("id") or 0)),
        )
        self._sequence_by_id = {
            int(record["id"]): int(record["local_id"])
            for record in ordered
            if record.get("id") is not None and record.get("local_id") is not None
        }
        survivors = self.reconciler.surviving_rows()
        self.grid.load_data([row_from_record(record) for record in ordered] + survivors)
        self.reconciler.refresh_indices()
        for record_id, error in list(self.save_errors.items()):
            row = find_server_id(self.grid, record_id)
            if row is None:
                del self.save_errors[record_id]
            else:
                self.grid.set_cell_meta(row, Column.DISPLAY_ID, SAVE_ERROR, error)
        self.normalize_display_ids()

    def normalize_display_ids(self) -> int:
        cells: list[tuple[int, int, Any]] = []
        for row in range(self.grid.count_rows()):
            identity = identity_of(self.grid, row)
            if isinstance(identity, Permanent):
                sequence = self._sequence_by_id.get(identity.server_id)
                if sequence is None:
                    continue
                expected = display_id(sequence, self.owner_id)
            elif isinstance(identity, Temporary):
                record = self.registry.get(identity.marker)
                failed = record is not None and record.status is TempRowStatus.FAILED
                expected = FAILED_LABEL if failed else LOADING_LABEL
            else:
                continue
            if self.grid.get_data_at_cell(row, Column.DISPLAY_ID) != expected:
                cells.append((row, Column.DISPLAY_ID, expected))
        with self.grid.batch():
            self.grid.set_cells(cells, "system")
        return len(cells)

    async def _escape(self, error: Exception) -> bool:
        """
        Last resort when a reload fails: drop all local session state and
        resynchronize from scratch once.
        """
        self.notify(Notice(NoticeLevel.ERROR, RELOAD_FAILED, str(error), retryable=True))
        if self._escape_hatch is not None:
            await self._escape_hatch()
            self.stale = True
            return False

        dropped = self.save_queue.cancel()
        self.temp_queue.cancel()
        self.registry.clear()
        logger.warning(
            "Resynchronizing from scratch",
            extra={"extra_fields": {"session_id": self.session_id, "dropped_edits": len(dropped)}},
        )
        try:
            records = await self.client.fetch_records(no_cache=True)
        except PersistenceError as exc:
            logger.error(
                "Resync failed",
                extra={"extra_fields": {"session_id": self.session_id, "error": str(exc)}},
            )
            self.stale = True
            return False
        self._apply_dataset(records)
        self.stale = False
        return True
