from __future__ import annotations

import json
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from apps.adsheet.core.columns import COLUMN_BY_FIELD, Column, is_data_field, normalize_value
from apps.adsheet.core.events import BroadcastEvent, EventType, FieldChange
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.resolver import RowResolver
from apps.adsheet.sync.session import SessionScope
from shared.logger import get_logger

logger = get_logger("AdSheet Listener")

EXTERNAL_SOURCE = "external"


class HandleOutcome(str, Enum):
    APPLIED = "applied"
    RELOADED = "reloaded"
    ECHO = "echo"
    DROPPED = "dropped"
    INVALID = "invalid"


class BroadcastListener:
    """
    Applies owner-scoped broadcast events to the local grid.

    Writes go through ``grid.batch`` with the ``external`` source so they
    never re-enter the edit tracker. Inserts are never applied in place:
    a row-insert always means a full reload, which avoids duplicate rows.
    """

    def __init__(
        self,
        grid: SheetGrid,
        session: SessionScope,
        reload: Callable[[], Awaitable[bool]],
        *,
        resolver: RowResolver | None = None,
    ) -> None:
        self.grid = grid
        self.session = session
        self._reload = reload
        self.resolver = resolver or RowResolver()

    @staticmethod
    def parse(payload: BroadcastEvent | dict[str, Any] | str | bytes) -> BroadcastEvent:
        if isinstance(payload, BroadcastEvent):
            return payload
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        return BroadcastEvent.model_validate(payload)

    async def handle(self, payload: BroadcastEvent | dict[str, Any] | str | bytes) -> HandleOutcome:
        try:
            event = self.parse(payload)
        except (ValidationError, ValueError) as exc:
            logger.warning(
                "Ignoring malformed broadcast",
                extra={"extra_fields": {"error": str(exc)}},
            )
            return HandleOutcome.INVALID

        if not self.session.should_apply(event):
            return HandleOutcome.ECHO

        if event.type is EventType.FIELD_UPDATE:
            return await self._on_field_update(event)
        if event.type is EventType.BATCH_UPDATE:
            return await self._on_batch_update(event)
        if event.type is EventType.ROW_UPDATE:
            return await self._on_row_update(event)
        if event.type is EventType.CROSS_TAB_STATUS:
            return self._on_status(event)
        # row-insert and full-refresh both mean "your dataset is stale".
        return HandleOutcome.RELOADED if await self._reload() else HandleOutcome.DROPPED

    # ============================================================
    # WRITES
    # ============================================================

    def _cells(self, row: int, values: dict[str, Any]) -> list[tuple[int, int, Any]]:
        return [
            (row, COLUMN_BY_FIELD[key], normalize_value(key, value))
            for key, value in values.items()
            if is_data_field(key)
        ]

    def _write(self, row: int, values: dict[str, Any]) -> None:
        with self.grid.batch():
            self.grid.set_cells(self._cells(row, values), EXTERNAL_SOURCE)

    # ============================================================
    # HANDLERS
    # ============================================================

    async def _on_field_update(self, event: BroadcastEvent) -> HandleOutcome:
        values = {event.field: event.new_value}
        row = self.resolver.resolve(self.grid, event.record_id)
        if row is not None:
            self._write(row, values)
            return HandleOutcome.APPLIED

        # Probably a row this session has not loaded yet.
        if not await self._reload():
            return HandleOutcome.DROPPED
        row = self.resolver.resolve_permanent(self.grid, event.record_id)
        if row is None:
            logger.warning(
                "Dropping field update for unknown record",
                extra={
                    "extra_fields": {
                        "record_id": event.record_id,
                        "field": event.field,
                    }
                },
            )
            return HandleOutcome.DROPPED
        self._write(row, values)
        return HandleOutcome.RELOADED

    async def _on_batch_update(self, event: BroadcastEvent) -> HandleOutcome:
        missed: list[FieldChange] = []
        with self.grid.batch():
            for change in event.changes:
                row = self.resolver.resolve(self.grid, change.record_id)
                if row is None:
                    missed.append(change)
                    continue
                self.grid.set_cells(
                    self._cells(row, {change.field: change.new_value}),
                    EXTERNAL_SOURCE,
                )
        if not missed:
            return HandleOutcome.APPLIED

        if not await self._reload():
            return HandleOutcome.DROPPED
        with self.grid.batch():
            for change in missed:
                row = self.resolver.resolve_permanent(self.grid, change.record_id)
                if row is None:
                    logger.warning(
                        "Dropping batch change for unknown record",
                        extra={
                            "extra_fields": {
                                "record_id": change.record_id,
                                "field": change.field,
                            }
                        },
                    )
                    continue
                self.grid.set_cells(
                    self._cells(row, {change.field: change.new_value}),
                    EXTERNAL_SOURCE,
                )
        return HandleOutcome.RELOADED

    async def _on_row_update(self, event: BroadcastEvent) -> HandleOutcome:
        record = event.data[0]
        row = self.resolver.resolve(self.grid, event.record_id)
        if row is not None:
            self._write(row, record)
            return HandleOutcome.APPLIED
        return HandleOutcome.RELOADED if await self._reload() else HandleOutcome.DROPPED

    def _on_status(self, event: BroadcastEvent) -> HandleOutcome:
        row = self.resolver.resolve_permanent(self.grid, event.record_id)
        if row is None:
            logger.debug(
                "Status update for record not in grid",
                extra={"extra_fields": {"record_id": event.record_id}},
            )
            return HandleOutcome.DROPPED
        with self.grid.batch():
            self.grid.set_cells(
                [(row, Column.STATUS, normalize_value("status", event.status))],
                EXTERNAL_SOURCE,
            )
        return HandleOutcome.APPLIED
