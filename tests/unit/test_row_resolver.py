from apps.adsheet.core.columns import Column, empty_row
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.resolver import RowResolver, by_record_id


def _row(record_id=None, code="", display=""):
    row = empty_row()
    row[Column.RECORD_ID] = record_id
    row[Column.ACCOUNT_CODE] = code
    row[Column.DISPLAY_ID] = display
    return row


def test_record_id_is_authoritative():
    grid = SheetGrid(rows=[_row(code="TK 42"), _row(record_id=42, display="3-7")])
    assert RowResolver().resolve(grid, 42) == 1


def test_account_code_fallback_matches_whole_digit_tokens():
    grid = SheetGrid(rows=[_row(code="ACC-1421"), _row(code="ACC-42 / 9")])
    assert RowResolver().resolve(grid, 42) == 1
    assert RowResolver().resolve(grid, 4) is None


def test_display_id_prefix_fallback():
    grid = SheetGrid(rows=[_row(display="15-7"), _row(display="5-7")])
    assert RowResolver().resolve(grid, 5) == 1


def test_fallbacks_never_hijack_promoted_rows():
    grid = SheetGrid(rows=[_row(record_id=8, code="42", display="42-7")])
    assert RowResolver().resolve(grid, 42) is None
    assert RowResolver().resolve_permanent(grid, 8) == 0


def test_custom_strategy_order():
    grid = SheetGrid(rows=[_row(code="42")])
    assert RowResolver(strategies=(by_record_id,)).resolve(grid, 42) is None
