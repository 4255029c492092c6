"""
Locating the grid row an incoming event refers to.

Strategies run in rank order and the first hit wins. Only the first one is
authoritative; the fallbacks exist for rows that have not been promoted yet
and therefore only consider rows without a permanent id.
"""

from __future__ import annotations

import re
from typing import Callable

from apps.adsheet.core.columns import Column
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.identity import Permanent, identity_of

Strategy = Callable[[SheetGrid, int], int | None]

_DIGITS_RE = re.compile(r"\d+")


def by_record_id(grid: SheetGrid, record_id: int) -> int | None:
    for row in range(grid.count_rows()):
        if identity_of(grid, row) == Permanent(record_id):
            return row
    return None


def _unpromoted_rows(grid: SheetGrid):
    for row in range(grid.count_rows()):
        if not isinstance(identity_of(grid, row), Permanent):
            yield row


def by_account_code(grid: SheetGrid, record_id: int) -> int | None:
    needle = str(record_id)
    for row in _unpromoted_rows(grid):
        code = grid.get_data_at_cell(row, Column.ACCOUNT_CODE)
        if code and needle in _DIGITS_RE.findall(str(code)):
            return row
    return None


def by_display_id(grid: SheetGrid, record_id: int) -> int | None:
    prefix = f"{record_id}-"
    for row in _unpromoted_rows(grid):
        value = grid.get_data_at_cell(row, Column.DISPLAY_ID)
        if isinstance(value, str) and value.startswith(prefix):
            return row
    return None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (by_record_id, by_account_code, by_display_id)


class RowResolver:
    def __init__(self, strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES) -> None:
        self.strategies = strategies

    def resolve(self, grid: SheetGrid, record_id: int) -> int | None:
        for strategy in self.strategies:
            row = strategy(grid, record_id)
            if row is not None:
                return row
        return None

    def resolve_permanent(self, grid: SheetGrid, record_id: int) -> int | None:
        return by_record_id(grid, record_id)
