import re

from apps.adsheet.core.columns import Column, empty_row
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.identity import (
    LOADING_LABEL,
    Permanent,
    RowOrigin,
    Temporary,
    assign_marker,
    identity_of,
    is_optimistic,
    marker_origin,
    marker_timestamp,
    new_marker,
    promote,
    temp_rows,
)


def _grid_with_rows(count: int) -> SheetGrid:
    return SheetGrid(rows=[empty_row() for _ in range(count)])


def test_marker_format_carries_origin_and_time():
    marker = new_marker(RowOrigin.PASTE, now=1700000000.123)
    assert re.fullmatch(r"temp-paste-1700000000123-[0-9a-f]{9}", marker)
    assert marker_origin(marker) is RowOrigin.PASTE
    assert marker_timestamp(marker) == 1700000000.123
    assert marker_origin("not-a-marker") is None
    assert new_marker(RowOrigin.MANUAL) != new_marker(RowOrigin.MANUAL)


def test_record_id_wins_over_marker():
    grid = _grid_with_rows(3)
    grid.set_cells(
        [
            (0, Column.RECORD_ID, 12),
            (1, Column.TEMP_MARKER, "temp-row-1-abc"),
            (2, Column.RECORD_ID, 13),
            (2, Column.TEMP_MARKER, "temp-row-2-abc"),
        ],
        "system",
    )
    assert identity_of(grid, 0) == Permanent(12)
    assert identity_of(grid, 1) == Temporary("temp-row-1-abc")
    assert identity_of(grid, 2) == Permanent(13)
    assert temp_rows(grid) == {"temp-row-1-abc": 1}


def test_assign_marker_shows_loading_label():
    grid = _grid_with_rows(1)
    marker = assign_marker(grid, 0, RowOrigin.LAZY)
    assert identity_of(grid, 0) == Temporary(marker)
    assert grid.get_data_at_cell(0, Column.DISPLAY_ID) == LOADING_LABEL


def test_promote_swaps_identity_and_keeps_data():
    grid = _grid_with_rows(2)
    marker = assign_marker(grid, 1, RowOrigin.MANUAL)
    grid.set_cells([(1, Column.NAME, "Shop B")], "edit")

    row = promote(grid, marker, server_id=55, sequence_number=4, owner_id=7)

    assert row == 1
    assert identity_of(grid, 1) == Permanent(55)
    assert grid.get_data_at_cell(1, Column.TEMP_MARKER) == ""
    assert grid.get_data_at_cell(1, Column.DISPLAY_ID) == "4-7"
    assert grid.get_data_at_cell(1, Column.NAME) == "Shop B"


def test_promote_twice_is_idempotent():
    grid = _grid_with_rows(1)
    marker = assign_marker(grid, 0, RowOrigin.MANUAL)
    promote(grid, marker, 55, 1, 7)
    snapshot = grid.get_data()
    repaints = grid.repaint_count

    assert promote(grid, marker, 55, 1, 7) == 0
    assert grid.get_data() == snapshot
    assert grid.repaint_count == repaints
    assert grid.count_rows() == 1


def test_promote_unknown_marker_returns_none():
    grid = _grid_with_rows(1)
    assert promote(grid, "temp-row-1-deadbeef0", 99, 1, 7) is None


def test_only_marked_rows_are_optimistic():
    grid = _grid_with_rows(3)
    assign_marker(grid, 1, RowOrigin.PASTE)
    grid.set_cells([(2, Column.RECORD_ID, 40)], "system")
    assert [is_optimistic(grid, row) for row in range(3)] == [False, True, False]
