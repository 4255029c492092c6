from __future__ import annotations

import re
import threading
from datetime import datetime
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from apps.adsheet.core.columns import DATA_FIELDS, FIELD_DEFAULTS, display_id
from shared.tenant import get_tenant_id, get_timezone

DEFAULT_CODE_PREFIX = "Tài khoản"
_DEFAULT_CODE_RE = re.compile(rf"^{DEFAULT_CODE_PREFIX} (\d+)$")


def _now() -> str:
    return datetime.now(ZoneInfo(get_timezone())).isoformat()


def next_default_code_number(codes: Iterable[str]) -> int:
    highest = 0
    for code in codes:
        match = _DEFAULT_CODE_RE.match((code or "").strip())
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def default_account_code(number: int) -> str:
    return f"{DEFAULT_CODE_PREFIX} {number}"


class MemoryAccountStore:
    """
    Thread-safe ad-account storage for one tenant.

    Mirrors the MySQL query helpers one to one so the service layer can
    dispatch to either backend.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[int, dict[str, Any]] = {}
        self._next_id = 1
        self.changes: list[dict[str, Any]] = []

    def _public(self, record: dict[str, Any]) -> dict[str, Any]:
        result = dict(record)
        result["display_id"] = display_id(record["local_id"], record["owner_id"])
        return result

    def _owned(self, owner_id: int) -> list[dict[str, Any]]:
        return [
            record
            for record in self._accounts.values()
            if record["owner_id"] == owner_id
        ]

    # ============================================================
    # READS
    # ============================================================

    def list_accounts(self, owner_id: int) -> list[dict[str, Any]]:
        with self._lock:
            records = sorted(
                self._owned(owner_id),
                key=lambda record: (record["local_id"], record["id"]),
            )
            return [self._public(record) for record in records]

    def get_account(self, owner_id: int, record_id: int) -> dict[str, Any] | None:
        with self._lock:
            record = self._accounts.get(record_id)
            if record is None or record["owner_id"] != owner_id:
                return None
            return self._public(record)

    # ============================================================
    # WRITES
    # ============================================================

    def create_accounts(
        self,
        owner_id: int,
        user_id: int,
        rows: list[dict[str, str]],
    ) -> list[dict[str, Any]]:
        with self._lock:
            owned = self._owned(owner_id)
            next_local = max((record["local_id"] for record in owned), default=0) + 1
            next_code = next_default_code_number(
                record["account_code"] for record in owned
            )
            created: list[dict[str, Any]] = []
            now = _now()
            for values in rows:
                record: dict[str, Any] = dict(FIELD_DEFAULTS)
                record.update({key: values[key] for key in DATA_FIELDS if key in values})
                if not record["account_code"].strip():
                    record["account_code"] = default_account_code(next_code)
                    next_code += 1
                record.update(
                    {
                        "id": self._next_id,
                        "local_id": next_local,
                        "owner_id": owner_id,
                        "created_by": user_id,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                self._accounts[self._next_id] = record
                self._next_id += 1
                next_local += 1
                created.append(self._public(record))
            return created

    def update_fields(
        self,
        owner_id: int,
        record_id: int,
        values: dict[str, str],
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        """
        Returns ``(previous values, updated record)`` or None when the record
        is not visible to the owner.
        """
        with self._lock:
            record = self._accounts.get(record_id)
            if record is None or record["owner_id"] != owner_id:
                return None
            previous = {key: record.get(key) for key in values}
            record.update(values)
            record["updated_at"] = _now()
            return previous, self._public(record)

    def delete_accounts(self, owner_id: int, record_ids: list[int]) -> int:
        with self._lock:
            deleted = 0
            for record_id in record_ids:
                record = self._accounts.get(record_id)
                if record is not None and record["owner_id"] == owner_id:
                    del self._accounts[record_id]
                    deleted += 1
            return deleted

    def log_changes(self, owner_id: int, user_id: int, changes: list[dict[str, Any]]) -> int:
        if not changes:
            return 0
        now = _now()
        with self._lock:
            for change in changes:
                self.changes.append(
                    {**change, "owner_id": owner_id, "user_id": user_id, "changed_at": now}
                )
        return len(changes)


_STORES: dict[str, MemoryAccountStore] = {}
_STORES_LOCK = threading.Lock()


def get_memory_store(tenant_id: str | None = None) -> MemoryAccountStore:
    key = tenant_id or get_tenant_id() or "default"
    with _STORES_LOCK:
        store = _STORES.get(key)
        if store is None:
            store = MemoryAccountStore()
            _STORES[key] = store
        return store


def reset_memory_stores() -> None:
    with _STORES_LOCK:
        _STORES.clear()
