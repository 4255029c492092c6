from __future__ import annotations

import ast
import json
import re
import threading

from shared.constants import BROADCAST_HISTORY_SIZE
from shared.tenant import (
    TenantConfigValidationError,
    get_env,
    get_tenant_id,
)

APP_NAME = "AdSheet"

STORE_MEMORY = "memory"
STORE_MYSQL = "mysql"
_STORES = {STORE_MEMORY, STORE_MYSQL}

_DB_TABLE_RE = re.compile(r"^[A-Za-z0-9_]+(?:\.[A-Za-z0-9_]+)*$")
_REQUIRED_DB_TABLE_KEYS = {
    "ACCOUNTS",
    "ACCOUNT_CHANGES",
}
_REQUIRED_DB_KEYS = ("DB_HOST", "DB_USER", "DB_NAME")

_VALIDATED_TENANTS: set[str] = set()
_VALIDATION_LOCK = threading.Lock()


def _blank(raw: object) -> bool:
    return raw is None or str(raw).strip() == ""


def _parse_raw_value(raw: str, expected_type):
    """
    Tenant values arrive as strings; JSON first, then Python literal syntax
    (single-quoted dicts are common in hand-written YAML).
    """
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        try:
            parsed = ast.literal_eval(raw)
        except (ValueError, SyntaxError):
            return None
    return parsed if isinstance(parsed, expected_type) else None


# ============================================================
# CHECKS
# ============================================================
# Each check appends problems to ``missing`` / ``invalid`` and returns the
# parsed value (or None) so the getters and the validator share one rule set.


def _check_store(invalid: list[str]) -> str | None:
    value = str(get_env("ACCOUNT_STORE", STORE_MYSQL) or STORE_MYSQL).strip().lower()
    if value not in _STORES:
        invalid.append("ACCOUNT_STORE")
        return None
    return value


def _check_history_size(invalid: list[str]) -> int:
    raw = get_env("CHANGE_HISTORY_SIZE")
    if _blank(raw):
        return BROADCAST_HISTORY_SIZE
    try:
        value = int(str(raw).strip())
    except ValueError:
        value = 0
    if value <= 0:
        invalid.append("CHANGE_HISTORY_SIZE")
        return BROADCAST_HISTORY_SIZE
    return value


def _check_db_tables(missing: list[str], invalid: list[str]) -> dict[str, str]:
    raw = get_env("DB_TABLES") or get_env("db_tables")
    if _blank(raw):
        missing.append("DB_TABLES")
        return {}
    parsed = _parse_raw_value(str(raw), dict)
    if parsed is None:
        invalid.append("DB_TABLES")
        return {}

    tables: dict[str, str] = {}
    for key, value in parsed.items():
        name = str(value).strip()
        if not name or not _DB_TABLE_RE.fullmatch(name):
            invalid.append(f"DB_TABLES.{key}")
            continue
        tables[str(key).upper()] = name

    named = {str(key).upper() for key in parsed}
    missing.extend(f"DB_TABLES.{key}" for key in sorted(_REQUIRED_DB_TABLE_KEYS - named))
    return tables


def _raise_if_problems(missing: list[str], invalid: list[str]) -> None:
    if missing or invalid:
        raise TenantConfigValidationError(app_name=APP_NAME, missing=missing, invalid=invalid)


# ============================================================
# GETTERS
# ============================================================


def get_account_store() -> str:
    invalid: list[str] = []
    store = _check_store(invalid)
    _raise_if_problems([], invalid)
    return store


def get_history_size() -> int:
    invalid: list[str] = []
    size = _check_history_size(invalid)
    _raise_if_problems([], invalid)
    return size


def get_db_tables() -> dict[str, str]:
    missing: list[str] = []
    invalid: list[str] = []
    tables = _check_db_tables(missing, invalid)
    _raise_if_problems(missing, invalid)
    return tables


# ============================================================
# VALIDATION
# ============================================================


def validate_tenant_config(tenant_id: str | None = None) -> None:
    """
    Ensure the tenant config can back the ad-account grid.
    Cached per tenant to avoid re-validating on every request.
    """
    tenant_id = tenant_id or get_tenant_id()
    if not tenant_id:
        raise TenantConfigValidationError(app_name=APP_NAME, missing=["tenant_id"])

    with _VALIDATION_LOCK:
        if tenant_id in _VALIDATED_TENANTS:
            return

        missing: list[str] = []
        invalid: list[str] = []

        store = _check_store(invalid)
        _check_history_size(invalid)
        if store == STORE_MYSQL:
            missing.extend(key for key in _REQUIRED_DB_KEYS if _blank(get_env(key)))
            _check_db_tables(missing, invalid)

        _raise_if_problems(missing, invalid)
        _VALIDATED_TENANTS.add(tenant_id)


def reset_validation_cache() -> None:
    with _VALIDATION_LOCK:
        _VALIDATED_TENANTS.clear()
