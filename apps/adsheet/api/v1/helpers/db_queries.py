from __future__ import annotations

from typing import Any

from apps.adsheet.api.v1.helpers.config import get_db_tables
from apps.adsheet.api.v1.helpers.memory_store import (
    DEFAULT_CODE_PREFIX,
    default_account_code,
    next_default_code_number,
)
from apps.adsheet.core.columns import DATA_FIELDS, FIELD_DEFAULTS, display_id
from shared.db import fetch_all, fetch_one, run_transaction

_ACCOUNT_COLUMNS = ", ".join(
    ["id", "local_id", "owner_id", *DATA_FIELDS, "created_at", "updated_at"]
)


# ============================================================
# HELPERS
# ============================================================


def _to_record(row: dict[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for key, value in row.items():
        if key in DATA_FIELDS:
            record[key] = "" if value is None else str(value)
        elif hasattr(value, "isoformat"):
            record[key] = value.isoformat()
        else:
            record[key] = value
    record["display_id"] = display_id(record["local_id"], record["owner_id"])
    return record


# ============================================================
# READS
# ============================================================


def list_accounts(owner_id: int) -> list[dict[str, Any]]:
    accounts_table = get_db_tables()["ACCOUNTS"]
    query = (
        f"SELECT {_ACCOUNT_COLUMNS} FROM {accounts_table} "
        "WHERE owner_id = %s ORDER BY local_id, id"
    )
    return [_to_record(row) for row in fetch_all(query, (owner_id,))]


def get_account(owner_id: int, record_id: int) -> dict[str, Any] | None:
    accounts_table = get_db_tables()["ACCOUNTS"]
    query = (
        f"SELECT {_ACCOUNT_COLUMNS} FROM {accounts_table} "
        "WHERE owner_id = %s AND id = %s"
    )
    row = fetch_one(query, (owner_id, record_id))
    return _to_record(row) if row else None


# ============================================================
# WRITES
# ============================================================


def create_accounts(
    owner_id: int,
    user_id: int,
    rows: list[dict[str, str]],
) -> list[dict[str, Any]]:
    accounts_table = get_db_tables()["ACCOUNTS"]
    insert_columns = ["local_id", "owner_id", "created_by", *DATA_FIELDS]
    insert_query = (
        f"INSERT INTO {accounts_table} ({', '.join(insert_columns)}) "
        f"VALUES ({', '.join(['%s'] * len(insert_columns))})"
    )

    def _work(cursor) -> list[int]:
        # Row locks keep concurrent bulk creates from sharing a sequence number.
        cursor.execute(
            f"SELECT COALESCE(MAX(local_id), 0) AS max_local_id FROM {accounts_table} "
            "WHERE owner_id = %s FOR UPDATE",
            (owner_id,),
        )
        next_local = int(cursor.fetchone()["max_local_id"]) + 1
        cursor.execute(
            f"SELECT account_code FROM {accounts_table} "
            "WHERE owner_id = %s AND account_code LIKE %s",
            (owner_id, f"{DEFAULT_CODE_PREFIX} %"),
        )
        next_code = next_default_code_number(
            str(row["account_code"] or "") for row in cursor.fetchall()
        )

        ids: list[int] = []
        for values in rows:
            record = dict(FIELD_DEFAULTS)
            record.update({key: values[key] for key in DATA_FIELDS if key in values})
            if not record["account_code"].strip():
                record["account_code"] = default_account_code(next_code)
                next_code += 1
            params = (next_local, owner_id, user_id, *(record[key] for key in DATA_FIELDS))
            cursor.execute(insert_query, params)
            ids.append(int(cursor.lastrowid))
            next_local += 1
        return ids

    ids = run_transaction(_work, cursor_kwargs={"dictionary": True})
    if not ids:
        return []

    placeholders = ", ".join(["%s"] * len(ids))
    query = (
        f"SELECT {_ACCOUNT_COLUMNS} FROM {accounts_table} "
        f"WHERE owner_id = %s AND id IN ({placeholders}) ORDER BY local_id"
    )
    return [_to_record(row) for row in fetch_all(query, (owner_id, *ids))]


def update_fields(
    owner_id: int,
    record_id: int,
    values: dict[str, str],
) -> tuple[dict[str, Any], dict[str, Any]] | None:
    accounts_table = get_db_tables()["ACCOUNTS"]
    fields = [key for key in values if key in DATA_FIELDS]
    if not fields:
        raise ValueError("No updatable fields provided")

    def _work(cursor) -> dict[str, Any] | None:
        cursor.execute(
            f"SELECT {', '.join(fields)} FROM {accounts_table} "
            "WHERE owner_id = %s AND id = %s FOR UPDATE",
            (owner_id, record_id),
        )
        previous = cursor.fetchone()
        if previous is None:
            return None
        assignments = ", ".join(f"{key} = %s" for key in fields)
        cursor.execute(
            f"UPDATE {accounts_table} SET {assignments} "
            "WHERE owner_id = %s AND id = %s",
            (*(values[key] for key in fields), owner_id, record_id),
        )
        return {key: "" if previous[key] is None else str(previous[key]) for key in fields}

    previous = run_transaction(_work, cursor_kwargs={"dictionary": True})
    if previous is None:
        return None
    record = get_account(owner_id, record_id)
    if record is None:
        return None
    return previous, record


def delete_accounts(owner_id: int, record_ids: list[int]) -> int:
    if not record_ids:
        return 0
    accounts_table = get_db_tables()["ACCOUNTS"]
    placeholders = ", ".join(["%s"] * len(record_ids))
    query = (
        f"DELETE FROM {accounts_table} "
        f"WHERE owner_id = %s AND id IN ({placeholders})"
    )

    def _work(cursor) -> int:
        cursor.execute(query, (owner_id, *record_ids))
        return cursor.rowcount

    return run_transaction(_work)


def log_changes(owner_id: int, user_id: int, changes: list[dict[str, Any]]) -> int:
    if not changes:
        return 0
    changes_table = get_db_tables()["ACCOUNT_CHANGES"]
    query = (
        f"INSERT INTO {changes_table} "
        "(record_id, owner_id, user_id, field, old_value, new_value, session_id) "
        "VALUES (%s, %s, %s, %s, %s, %s, %s)"
    )
    values = [
        (
            change["record_id"],
            owner_id,
            user_id,
            change["field"],
            change.get("old_value"),
            change.get("new_value"),
            change.get("session_id"),
        )
        for change in changes
    ]

    def _work(cursor) -> int:
        cursor.executemany(query, values)
        return cursor.rowcount

    return run_transaction(_work)
