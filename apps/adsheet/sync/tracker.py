from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from apps.adsheet.core.columns import (
    Column,
    column_for_field,
    has_user_data,
    is_read_only,
    row_fields,
)
from apps.adsheet.sync.debounce import DebouncedQueue
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.identity import (
    Permanent,
    RowOrigin,
    Temporary,
    assign_marker,
    identity_of,
)
from shared.logger import get_logger

logger = get_logger("AdSheet Sync")


# ============================================================
# RECORDS
# ============================================================


@dataclass
class PendingEdit:
    record_id: int
    field: str
    old_value: Any
    new_value: Any
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    # Failed save attempts so far; a newer edit to the same cell resets it.
    attempts: int = 0

    @property
    def key(self) -> tuple[int, str]:
        return (self.record_id, self.field)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "session_id": self.session_id,
        }


def merge_edits(existing: PendingEdit, newer: PendingEdit) -> PendingEdit:
    # The first old value survives; the newest value wins.
    return PendingEdit(
        record_id=newer.record_id,
        field=newer.field,
        old_value=existing.old_value,
        new_value=newer.new_value,
        session_id=newer.session_id or existing.session_id,
        timestamp=newer.timestamp,
    )


class TempRowStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TempRowRecord:
    marker: str
    row_index: int
    status: TempRowStatus = TempRowStatus.PENDING
    retry_count: int = 0
    needs_sync: bool = False
    snapshot: dict[str, Any] | None = None
    sent: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)


class TempRowRegistry:
    """
    Bookkeeping for optimistic rows, keyed by marker.
    """

    def __init__(self) -> None:
        self._records: dict[str, TempRowRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, marker: object) -> bool:
        return marker in self._records

    def get(self, marker: str) -> TempRowRecord | None:
        return self._records.get(marker)

    def register(self, marker: str, row_index: int) -> TempRowRecord:
        record = self._records.get(marker)
        if record is None:
            record = TempRowRecord(marker=marker, row_index=row_index)
            self._records[marker] = record
        else:
            record.row_index = row_index
        return record

    def discard(self, marker: str) -> TempRowRecord | None:
        return self._records.pop(marker, None)

    def records(self, *statuses: TempRowStatus) -> list[TempRowRecord]:
        if not statuses:
            return list(self._records.values())
        return [record for record in self._records.values() if record.status in statuses]

    def clear(self) -> None:
        self._records.clear()


# ============================================================
# TRACKER
# ============================================================


class RecordOutcome(str, Enum):
    IGNORED = "ignored"
    QUEUED = "queued"
    TEMP_TRACKED = "temp_tracked"


class LocalEditTracker:
    """
    Turns user cell edits into pending field edits.

    Permanent rows queue a ``PendingEdit`` keyed by ``(record_id, field)``.
    Optimistic rows are never queued: their registry entry is flagged for
    sync instead, because they are persisted through the bulk-create path.
    """

    def __init__(
        self,
        grid: SheetGrid,
        registry: TempRowRegistry,
        queue: DebouncedQueue[tuple[int, str], PendingEdit],
    ) -> None:
        self.grid = grid
        self.registry = registry
        self.queue = queue

    def pending(self) -> list[PendingEdit]:
        return self.queue.pending()

    def record(
        self,
        row: int,
        field_name: str,
        old_value: Any,
        new_value: Any,
        session_id: str | None = None,
    ) -> RecordOutcome:
        if old_value == new_value:
            return RecordOutcome.IGNORED
        try:
            column = column_for_field(field_name)
        except ValueError:
            return RecordOutcome.IGNORED
        if is_read_only(column):
            return RecordOutcome.IGNORED

        identity = identity_of(self.grid, row)
        if identity is None:
            if not has_user_data(self.grid.get_data_at_row(row)):
                return RecordOutcome.IGNORED
            marker = assign_marker(self.grid, row, RowOrigin.LAZY)
            self.registry.register(marker, row)
            logger.debug(
                "Lazy temp marker assigned",
                extra={"extra_fields": {"row": row, "marker": marker}},
            )
            identity = Temporary(marker)

        if isinstance(identity, Permanent):
            self.queue.put(
                (identity.server_id, field_name),
                PendingEdit(
                    record_id=identity.server_id,
                    field=field_name,
                    old_value="" if old_value is None else old_value,
                    new_value=new_value,
                    session_id=session_id,
                ),
            )
            return RecordOutcome.QUEUED

        record = self.registry.register(identity.marker, row)
        record.needs_sync = True
        record.snapshot = row_fields(self.grid.get_data_at_row(row))
        return RecordOutcome.TEMP_TRACKED

    def record_cell(
        self,
        row: int,
        column: int,
        old_value: Any,
        new_value: Any,
        session_id: str | None = None,
    ) -> RecordOutcome:
        if is_read_only(column):
            return RecordOutcome.IGNORED
        return self.record(row, Column(column).field, old_value, new_value, session_id)
