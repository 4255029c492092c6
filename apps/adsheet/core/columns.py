"""
Ad-account grid column schema.

Every positional access to a grid row goes through ``Column`` so a reordered
or extended layout fails loudly at construction instead of writing into the
wrong cell.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Any, Iterable, Mapping


class SchemaError(ValueError):
    pass


class Column(IntEnum):
    DISPLAY_ID = 0
    ACCOUNT_CODE = 1
    NAME = 2
    STATUS = 3
    SOURCE = 4
    RENTAL_PERCENTAGE = 5
    CARD_TYPE = 6
    CARD_NOTE = 7
    VAT_PERCENTAGE = 8
    CLIENT_TAG = 9
    ACCOUNT_PERMISSION = 10
    TT_EX = 11
    DESCRIPTION = 12
    RECORD_ID = 13
    TEMP_MARKER = 14

    @property
    def field(self) -> str:
        return self.name.lower()


COLUMN_COUNT = len(Column)

# System-owned columns; user writes into these are ignored.
READ_ONLY_COLUMNS = frozenset(
    {Column.DISPLAY_ID, Column.RECORD_ID, Column.TEMP_MARKER}
)

DATA_COLUMNS: tuple[Column, ...] = tuple(
    column for column in Column if column not in READ_ONLY_COLUMNS
)
DATA_FIELDS: tuple[str, ...] = tuple(column.field for column in DATA_COLUMNS)

PERCENT_FIELDS = frozenset({"rental_percentage", "vat_percentage"})

FIELD_DEFAULTS: dict[str, str] = {
    field: ("0" if field in PERCENT_FIELDS else "") for field in DATA_FIELDS
}

COLUMN_BY_FIELD: dict[str, Column] = {column.field: column for column in Column}

HEADERS: dict[Column, str] = {
    Column.DISPLAY_ID: "ID",
    Column.ACCOUNT_CODE: "ID TKQC",
    Column.NAME: "Tên TK",
    Column.STATUS: "Trạng thái",
    Column.SOURCE: "Nguồn",
    Column.RENTAL_PERCENTAGE: "% Thuê",
    Column.CARD_TYPE: "Loại thẻ",
    Column.CARD_NOTE: "Ghi chú thẻ",
    Column.VAT_PERCENTAGE: "% VAT",
    Column.CLIENT_TAG: "Tag KH",
    Column.ACCOUNT_PERMISSION: "Quyền TK",
    Column.TT_EX: "TT EX",
    Column.DESCRIPTION: "Mô tả",
    Column.RECORD_ID: "DB ID",
    Column.TEMP_MARKER: "Temp ID",
}


# ============================================================
# SCHEMA
# ============================================================


def validate_schema(column_count: int, headers: Iterable[str] | None = None) -> None:
    if column_count != COLUMN_COUNT:
        raise SchemaError(
            f"Grid has {column_count} columns, schema expects {COLUMN_COUNT}"
        )
    if headers is None:
        return
    expected = [HEADERS[column] for column in Column]
    actual = list(headers)
    if actual != expected:
        raise SchemaError(f"Grid headers {actual} do not match schema {expected}")


def is_read_only(column: int) -> bool:
    return column in READ_ONLY_COLUMNS


def field_for_column(column: int) -> str:
    return Column(column).field


def column_for_field(field: str) -> Column:
    try:
        return COLUMN_BY_FIELD[field]
    except KeyError as exc:
        raise ValueError(f"Unknown field '{field}'") from exc


def is_data_field(field: object) -> bool:
    return isinstance(field, str) and field in FIELD_DEFAULTS


# ============================================================
# VALUES
# ============================================================


def _normalize_percent(value: Any) -> str:
    if value is None:
        return "0"
    text = str(value).strip().replace("%", "").replace(",", ".").strip()
    if text == "" or text.lower() in {"null", "none", "nan"}:
        return "0"
    try:
        number = Decimal(text)
    except InvalidOperation:
        return "0"
    if not number.is_finite():
        return "0"
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


def normalize_value(field: str, value: Any) -> str:
    """
    Coerce a cell value into the stored string form.

    Percentage fields drop the ``%`` sign and fall back to ``"0"`` for blank
    or unparseable input; every other field only maps ``None`` to ``""``.
    """
    if field in PERCENT_FIELDS:
        return _normalize_percent(value)
    if value is None:
        return ""
    return str(value)


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


# ============================================================
# ROW <-> RECORD
# ============================================================


def display_id(sequence_number: int | str, owner_id: int | str) -> str:
    return f"{sequence_number}-{owner_id}"


def empty_row() -> list[Any]:
    row: list[Any] = [""] * COLUMN_COUNT
    for field, default in FIELD_DEFAULTS.items():
        row[COLUMN_BY_FIELD[field]] = default
    row[Column.RECORD_ID] = None
    return row


def row_from_record(record: Mapping[str, Any]) -> list[Any]:
    row = empty_row()
    for field in DATA_FIELDS:
        if field in record:
            row[COLUMN_BY_FIELD[field]] = normalize_value(field, record.get(field))
    local_id = record.get("local_id")
    owner_id = record.get("owner_id")
    if record.get("display_id"):
        row[Column.DISPLAY_ID] = str(record["display_id"])
    elif local_id is not None and owner_id is not None:
        row[Column.DISPLAY_ID] = display_id(local_id, owner_id)
    row[Column.RECORD_ID] = record.get("id")
    row[Column.TEMP_MARKER] = ""
    return row


def row_fields(row: list[Any]) -> dict[str, Any]:
    return {field: row[COLUMN_BY_FIELD[field]] for field in DATA_FIELDS}


def row_payload(row: list[Any]) -> dict[str, str]:
    """
    Data fields of a grid row, normalized, without identity bookkeeping.
    """
    return {
        field: normalize_value(field, row[COLUMN_BY_FIELD[field]])
        for field in DATA_FIELDS
    }


def non_default_fields(fields: Mapping[str, Any]) -> dict[str, str]:
    result: dict[str, str] = {}
    for field in DATA_FIELDS:
        value = normalize_value(field, fields.get(field))
        if value != FIELD_DEFAULTS[field]:
            result[field] = value
    return result


def has_user_data(row: list[Any]) -> bool:
    return bool(non_default_fields(row_fields(row)))
