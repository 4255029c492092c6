from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventType(str, Enum):
    FIELD_UPDATE = "field-update"
    BATCH_UPDATE = "batch-update"
    ROW_INSERT = "row-insert"
    ROW_UPDATE = "row-update"
    FULL_REFRESH = "full-refresh"
    CROSS_TAB_STATUS = "cross-tab-status"


# Inbound WebSocket message asking the hub to relay a status change.
STATUS_UPDATE_MESSAGE = "status-update"


class FieldChange(BaseModel):
    record_id: int
    field: str
    old_value: Any = None
    new_value: Any = None

    model_config = ConfigDict(extra="ignore")


class BroadcastEvent(BaseModel):
    """
    Owner-scoped notification pushed to every live grid session.

    ``session_id`` names the originating session; events without one are
    system-originated and never treated as an echo.
    """

    type: EventType
    session_id: str | None = None
    record_id: int | None = None
    field: str | None = None
    old_value: Any = None
    new_value: Any = None
    status: str | None = None
    changes: list[FieldChange] = Field(default_factory=list)
    data: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: float | None = None

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "type": "field-update",
                    "session_id": "session_3f9a1c2b7",
                    "record_id": 42,
                    "field": "name",
                    "old_value": "Foo",
                    "new_value": "Bar",
                    "timestamp": 1760000000.0,
                }
            ]
        },
    )

    @model_validator(mode="after")
    def _check_payload(self) -> "BroadcastEvent":
        if self.type is EventType.FIELD_UPDATE:
            if self.record_id is None or not self.field:
                raise ValueError("field-update requires record_id and field")
        elif self.type is EventType.BATCH_UPDATE:
            if not self.changes:
                raise ValueError("batch-update requires changes")
        elif self.type is EventType.ROW_UPDATE:
            if self.record_id is None or not self.data:
                raise ValueError("row-update requires record_id and data")
        elif self.type is EventType.CROSS_TAB_STATUS:
            if self.record_id is None or self.status is None:
                raise ValueError("cross-tab-status requires record_id and status")
        return self

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ============================================================
# FACTORIES
# ============================================================


def field_update(
    record_id: int,
    field: str,
    old_value: Any,
    new_value: Any,
    *,
    session_id: str | None = None,
) -> BroadcastEvent:
    return BroadcastEvent(
        type=EventType.FIELD_UPDATE,
        session_id=session_id,
        record_id=record_id,
        field=field,
        old_value=old_value,
        new_value=new_value,
        timestamp=time.time(),
    )


def batch_update(
    changes: list[FieldChange],
    *,
    session_id: str | None = None,
) -> BroadcastEvent:
    return BroadcastEvent(
        type=EventType.BATCH_UPDATE,
        session_id=session_id,
        changes=changes,
        timestamp=time.time(),
    )


def changes_event(
    changes: list[FieldChange],
    *,
    session_id: str | None = None,
) -> BroadcastEvent:
    """
    A single change travels as field-update, several as one batch-update.
    """
    if len(changes) == 1:
        change = changes[0]
        return field_update(
            change.record_id,
            change.field,
            change.old_value,
            change.new_value,
            session_id=session_id,
        )
    return batch_update(changes, session_id=session_id)


def row_insert(rows: list[dict[str, Any]], *, session_id: str | None = None) -> BroadcastEvent:
    return BroadcastEvent(
        type=EventType.ROW_INSERT,
        session_id=session_id,
        data=rows,
        timestamp=time.time(),
    )


def row_update(record: dict[str, Any], *, session_id: str | None = None) -> BroadcastEvent:
    return BroadcastEvent(
        type=EventType.ROW_UPDATE,
        session_id=session_id,
        record_id=record.get("id"),
        data=[record],
        timestamp=time.time(),
    )


def full_refresh(*, session_id: str | None = None) -> BroadcastEvent:
    return BroadcastEvent(
        type=EventType.FULL_REFRESH,
        session_id=session_id,
        timestamp=time.time(),
    )


def cross_tab_status(
    record_id: int,
    status: str,
    *,
    session_id: str | None = None,
) -> BroadcastEvent:
    return BroadcastEvent(
        type=EventType.CROSS_TAB_STATUS,
        session_id=session_id,
        record_id=record_id,
        status=status,
        timestamp=time.time(),
    )
