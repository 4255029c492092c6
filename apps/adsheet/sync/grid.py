"""
Headless spreadsheet grid.

Mirrors the capability surface of the browser grid widget: cell reads and
writes tagged with a source, batched writes with a single repaint, row
insertion and deletion, dataset replacement and the lifecycle hooks the
orchestrator wires into.
"""

from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from apps.adsheet.core.columns import (
    COLUMN_COUNT,
    empty_row,
    is_read_only,
    validate_schema,
    SchemaError,
)

HOOK_NAMES = (
    "after_change",
    "before_paste",
    "after_paste",
    "before_begin_editing",
    "after_deselect",
    "after_load",
)

# Sources a user produces; everything else is a system write.
USER_SOURCES = frozenset({"edit", "paste", "autofill", "undo", "redo"})


@dataclass(frozen=True)
class CellChange:
    row: int
    column: int
    old_value: Any
    new_value: Any


class SheetGrid:
    def __init__(
        self,
        rows: Iterable[list[Any]] | None = None,
        *,
        column_count: int = COLUMN_COUNT,
        headers: Iterable[str] | None = None,
    ) -> None:
        validate_schema(column_count, headers)
        self.column_count = column_count
        self._rows: list[list[Any]] = [self._check_row(row) for row in rows or []]
        # Per-row cell metadata (css class, error text), shifted with the rows.
        self._meta: list[dict[tuple[int, str], Any]] = [{} for _ in self._rows]
        self._hooks: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._batch_depth = 0
        self._batched: list[tuple[str, list[CellChange]]] = []
        self._dirty = False
        self.repaint_count = 0
        self.editing: tuple[int, int] | None = None

    def _check_row(self, row: list[Any]) -> list[Any]:
        values = list(row)
        if len(values) != self.column_count:
            raise SchemaError(
                f"Row has {len(values)} cells, schema expects {self.column_count}"
            )
        return values

    # ============================================================
    # HOOKS
    # ============================================================

    def add_hook(self, name: str, callback: Callable[..., Any]) -> None:
        if name not in HOOK_NAMES:
            raise ValueError(f"Unknown hook '{name}'")
        self._hooks[name].append(callback)

    def remove_hook(self, name: str, callback: Callable[..., Any]) -> None:
        if callback in self._hooks.get(name, []):
            self._hooks[name].remove(callback)

    def _fire(self, name: str, *args: Any) -> None:
        for callback in list(self._hooks.get(name, [])):
            callback(*args)

    # ============================================================
    # READS
    # ============================================================

    def count_rows(self) -> int:
        return len(self._rows)

    def get_data_at_cell(self, row: int, column: int) -> Any:
        if row < 0 or row >= len(self._rows):
            return None
        return self._rows[row][column]

    def get_data_at_row(self, row: int) -> list[Any]:
        return list(self._rows[row])

    def get_data(self) -> list[list[Any]]:
        return [list(row) for row in self._rows]

    def get_cell_meta(self, row: int, column: int, key: str) -> Any:
        if row < 0 or row >= len(self._meta):
            return None
        return self._meta[row].get((column, key))

    def set_cell_meta(self, row: int, column: int, key: str, value: Any) -> None:
        """
        Attach display metadata to a cell; ``None`` removes it. Metadata is
        not data: it fires no change hooks and is cleared by ``load_data``.
        """
        if row < 0 or row >= len(self._meta):
            raise IndexError(f"Row {row} out of range")
        meta = self._meta[row]
        if value is None:
            if meta.pop((column, key), None) is not None:
                self._repaint()
        elif meta.get((column, key)) != value:
            meta[(column, key)] = value
            self._repaint()

    # ============================================================
    # WRITES
    # ============================================================

    def _repaint(self) -> None:
        if self._batch_depth:
            self._dirty = True
            return
        self.repaint_count += 1

    def _emit(self, changes: list[CellChange], source: str) -> None:
        if not changes:
            return
        if self._batch_depth:
            self._batched.append((source, changes))
            self._dirty = True
            return
        self._repaint()
        self._fire("after_change", changes, source)

    def set_data_at_cell(
        self,
        row: int,
        column: int,
        value: Any,
        source: str = "edit",
    ) -> CellChange | None:
        return next(iter(self.set_cells([(row, column, value)], source)), None)

    def set_cells(
        self,
        cells: Iterable[tuple[int, int, Any]],
        source: str = "edit",
    ) -> list[CellChange]:
        changes: list[CellChange] = []
        for row, column, value in cells:
            if row < 0 or row >= len(self._rows):
                raise IndexError(f"Row {row} out of range")
            old = self._rows[row][column]
            if old == value:
                continue
            self._rows[row][column] = value
            changes.append(CellChange(row, column, old, value))
        self._emit(changes, source)
        return changes

    @contextmanager
    def batch(self) -> Iterator["SheetGrid"]:
        """
        Group writes so the grid repaints once and hooks see each source's
        changes together when the outermost batch closes.
        """
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush_batch()

    def _flush_batch(self) -> None:
        pending, self._batched = self._batched, []
        dirty, self._dirty = self._dirty, False
        if dirty:
            self.repaint_count += 1

        grouped: list[tuple[str, list[CellChange]]] = []
        for source, changes in pending:
            if grouped and grouped[-1][0] == source:
                grouped[-1][1].extend(changes)
            else:
                grouped.append((source, list(changes)))
        for source, changes in grouped:
            self._fire("after_change", changes, source)

    def insert_rows(
        self,
        index: int | None = None,
        amount: int = 1,
        rows: list[list[Any]] | None = None,
    ) -> list[int]:
        new_rows = [self._check_row(row) for row in rows] if rows else [
            empty_row() for _ in range(amount)
        ]
        at = len(self._rows) if index is None else max(0, min(index, len(self._rows)))
        self._rows[at:at] = new_rows
        self._meta[at:at] = [{} for _ in new_rows]
        self._repaint()
        return list(range(at, at + len(new_rows)))

    def delete_rows(self, indices: Iterable[int]) -> int:
        removed = 0
        for index in sorted(set(indices), reverse=True):
            if 0 <= index < len(self._rows):
                del self._rows[index]
                del self._meta[index]
                removed += 1
        if removed:
            self._repaint()
        return removed

    def load_data(self, rows: Iterable[list[Any]]) -> None:
        self._rows = [self._check_row(row) for row in rows]
        self._meta = [{} for _ in self._rows]
        self._repaint()
        self._fire("after_load", len(self._rows))

    # ============================================================
    # USER LIFECYCLE
    # ============================================================

    def begin_edit(self, row: int, column: int) -> None:
        self.editing = (row, column)
        self._fire("before_begin_editing", row, column)

    def end_edit(self) -> None:
        self.editing = None
        self._fire("after_deselect")

    def paste(
        self,
        start_row: int,
        start_column: int,
        block: list[list[Any]],
        source: str = "paste",
    ) -> list[CellChange]:
        block = [list(values) for values in block]
        # Hooks may grow the grid so the whole block fits.
        self._fire("before_paste", start_row, start_column, block)

        cells: list[tuple[int, int, Any]] = []
        for offset, values in enumerate(block):
            row = start_row + offset
            if row >= len(self._rows):
                break
            for col_offset, value in enumerate(values):
                column = start_column + col_offset
                if column >= self.column_count:
                    break
                if is_read_only(column):
                    continue
                cells.append((row, column, value))

        with self.batch():
            changes = self.set_cells(cells, source)
        self._fire("after_paste", changes)
        return changes
