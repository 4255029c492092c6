"""
Row identity: every grid row is either backed by a stored record
(``Permanent``) or an optimistic placeholder carrying a correlation marker
(``Temporary``). The transition happens once, through ``promote``.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from apps.adsheet.core.columns import Column, display_id
from apps.adsheet.sync.grid import SheetGrid

TEMP_PREFIX = "temp-"
LOADING_LABEL = "⏳ Đang tạo..."
FAILED_LABEL = "❌ Lỗi"

_MARKER_RE = re.compile(r"^temp-(?P<origin>[a-z]+)-(?P<ts>\d+)-(?P<suffix>[0-9a-f]+)$")


class RowOrigin(str, Enum):
    MANUAL = "row"
    PASTE = "paste"
    LAZY = "lazy"


@dataclass(frozen=True)
class Permanent:
    server_id: int


@dataclass(frozen=True)
class Temporary:
    marker: str


RowIdentity = Permanent | Temporary


def new_marker(origin: RowOrigin, *, now: float | None = None) -> str:
    ts = int((time.time() if now is None else now) * 1000)
    return f"{TEMP_PREFIX}{origin.value}-{ts}-{uuid.uuid4().hex[:9]}"


def is_temp_marker(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_PREFIX)


def marker_origin(marker: str) -> RowOrigin | None:
    match = _MARKER_RE.match(marker or "")
    if not match:
        return None
    try:
        return RowOrigin(match.group("origin"))
    except ValueError:
        return None


def marker_timestamp(marker: str) -> float | None:
    match = _MARKER_RE.match(marker or "")
    if not match:
        return None
    return int(match.group("ts")) / 1000


def _server_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        server_id = int(value)
    except (TypeError, ValueError):
        return None
    return server_id if server_id > 0 else None


# ============================================================
# LOOKUPS
# ============================================================


def identity_of(grid: SheetGrid, row: int) -> RowIdentity | None:
    server_id = _server_id(grid.get_data_at_cell(row, Column.RECORD_ID))
    if server_id is not None:
        return Permanent(server_id)
    marker = grid.get_data_at_cell(row, Column.TEMP_MARKER)
    if is_temp_marker(marker):
        return Temporary(marker)
    return None


def is_optimistic(grid: SheetGrid, row: int) -> bool:
    return isinstance(identity_of(grid, row), Temporary)


def find_marker(grid: SheetGrid, marker: str) -> int | None:
    for row in range(grid.count_rows()):
        if grid.get_data_at_cell(row, Column.TEMP_MARKER) == marker:
            return row
    return None


def find_server_id(grid: SheetGrid, server_id: int, *, skip: int | None = None) -> int | None:
    for row in range(grid.count_rows()):
        if row == skip:
            continue
        if _server_id(grid.get_data_at_cell(row, Column.RECORD_ID)) == server_id:
            return row
    return None


def temp_rows(grid: SheetGrid) -> dict[str, int]:
    rows: dict[str, int] = {}
    for row in range(grid.count_rows()):
        marker = grid.get_data_at_cell(row, Column.TEMP_MARKER)
        if is_temp_marker(marker) and _server_id(
            grid.get_data_at_cell(row, Column.RECORD_ID)
        ) is None:
            rows[marker] = row
    return rows


# ============================================================
# TRANSITIONS
# ============================================================


def assign_marker(
    grid: SheetGrid,
    row: int,
    origin: RowOrigin,
    *,
    source: str = "system",
) -> str:
    marker = new_marker(origin)
    with grid.batch():
        grid.set_cells(
            [
                (row, Column.TEMP_MARKER, marker),
                (row, Column.DISPLAY_ID, LOADING_LABEL),
            ],
            source,
        )
    return marker


def promote(
    grid: SheetGrid,
    marker: str,
    server_id: int,
    sequence_number: int,
    owner_id: int,
) -> int | None:
    """
    Turn the row carrying ``marker`` into a permanent row.

    Writes the server id, clears the marker and recomputes the display id,
    leaving every data field untouched. Returns the row index, or ``None``
    when no row carries the marker. Promoting an already promoted record
    returns its row without writing anything.
    """
    row = find_marker(grid, marker)
    if row is None:
        return find_server_id(grid, server_id)

    with grid.batch():
        grid.set_cells(
            [
                (row, Column.RECORD_ID, server_id),
                (row, Column.TEMP_MARKER, ""),
                (row, Column.DISPLAY_ID, display_id(sequence_number, owner_id)),
            ],
            "reconcile",
        )
    return row
