import pytest

from apps.adsheet.core.columns import Column, empty_row
from apps.adsheet.sync.grid import SheetGrid


def test_batch_repaints_once_and_groups_changes():
    grid = SheetGrid(rows=[empty_row() for _ in range(3)])
    seen = []
    grid.add_hook("after_change", lambda changes, source: seen.append((source, len(changes))))

    with grid.batch():
        for row in range(3):
            grid.set_data_at_cell(row, Column.NAME, f"Shop {row}", "external")

    assert grid.repaint_count == 1
    assert seen == [("external", 3)]


def test_no_op_writes_fire_nothing():
    grid = SheetGrid(rows=[empty_row()])
    seen = []
    grid.add_hook("after_change", lambda changes, source: seen.append(changes))

    assert grid.set_data_at_cell(0, Column.NAME, "") is None
    assert seen == []


def test_out_of_range_reads_and_writes():
    grid = SheetGrid()
    assert grid.get_data_at_cell(5, Column.NAME) is None
    with pytest.raises(IndexError):
        grid.set_cells([(0, Column.NAME, "x")])


def test_unknown_hook_is_rejected():
    with pytest.raises(ValueError):
        SheetGrid().add_hook("after_nothing", lambda: None)


def test_paste_grows_grid_and_skips_read_only_columns():
    grid = SheetGrid(rows=[empty_row()])
    pasted = []

    def grow(start_row, start_column, block):
        missing = start_row + len(block) - grid.count_rows()
        if missing > 0:
            grid.insert_rows(amount=missing)

    grid.add_hook("before_paste", grow)
    grid.add_hook("after_paste", lambda changes: pasted.extend(changes))

    changes = grid.paste(0, 0, [["9-9", "111", "A"], ["9-9", "222", "B"]])

    assert grid.count_rows() == 2
    assert grid.get_data_at_cell(0, Column.DISPLAY_ID) == ""
    assert grid.get_data_at_cell(1, Column.ACCOUNT_CODE) == "222"
    assert grid.get_data_at_cell(1, Column.NAME) == "B"
    assert pasted == changes
    assert {change.column for change in changes} == {Column.ACCOUNT_CODE, Column.NAME}


def test_insert_and_delete_rows():
    grid = SheetGrid(rows=[empty_row() for _ in range(2)])
    assert grid.insert_rows(index=1, amount=2) == [1, 2]
    assert grid.count_rows() == 4
    assert grid.delete_rows([0, 2, 10]) == 2
    assert grid.count_rows() == 2


def test_load_data_fires_after_load():
    grid = SheetGrid()
    loaded = []
    grid.add_hook("after_load", loaded.append)
    grid.load_data([empty_row(), empty_row()])
    assert loaded == [2]


def test_cell_meta_follows_its_row_and_clears_on_load():
    grid = SheetGrid(rows=[empty_row() for _ in range(2)])
    changes = []
    grid.add_hook("after_change", lambda batch, source: changes.append(batch))

    grid.set_cell_meta(1, Column.DISPLAY_ID, "save_error", "HTTP 500")
    grid.insert_rows(0, 1)
    assert grid.get_cell_meta(2, Column.DISPLAY_ID, "save_error") == "HTTP 500"
    assert grid.get_cell_meta(1, Column.DISPLAY_ID, "save_error") is None

    grid.delete_rows([0])
    assert grid.get_cell_meta(1, Column.DISPLAY_ID, "save_error") == "HTTP 500"
    grid.set_cell_meta(1, Column.DISPLAY_ID, "save_error", None)
    assert grid.get_cell_meta(1, Column.DISPLAY_ID, "save_error") is None

    grid.set_cell_meta(0, Column.DISPLAY_ID, "save_error", "HTTP 500")
    grid.load_data([empty_row()])
    assert grid.get_cell_meta(0, Column.DISPLAY_ID, "save_error") is None
    assert changes == []
    with pytest.raises(IndexError):
        grid.set_cell_meta(5, Column.DISPLAY_ID, "save_error", "x")
