"""
Ad-account service layer.

Validates and normalizes request payloads, dispatches to the tenant's
storage backend, and publishes the broadcast that tells every other grid
session what changed.
"""

from __future__ import annotations

from typing import Any

from apps.adsheet.api.v1.helpers import db_queries
from apps.adsheet.api.v1.helpers.broadcast import Subscriber, hub
from apps.adsheet.api.v1.helpers.config import (
    STORE_MEMORY,
    get_account_store,
    get_history_size,
)
from apps.adsheet.api.v1.helpers.memory_store import get_memory_store
from apps.adsheet.core.auth import AuthContext
from apps.adsheet.core.columns import is_data_field, normalize_value
from apps.adsheet.core.events import (
    BroadcastEvent,
    FieldChange,
    changes_event,
    cross_tab_status,
    field_update,
    full_refresh,
    row_insert,
    row_update,
)
from shared.logger import get_logger
from shared.tenant import get_tenant_id

logger = get_logger("AdSheet Accounts")


class AccountNotFoundError(LookupError):
    pass


# ============================================================
# HELPERS
# ============================================================


def _store():
    if get_account_store() == STORE_MEMORY:
        return get_memory_store()
    return db_queries


def _publish(
    auth: AuthContext,
    event: BroadcastEvent,
    *,
    exclude: Subscriber | None = None,
) -> None:
    hub.publish(
        hub.scope(get_tenant_id(), auth.owner_id),
        event,
        exclude=exclude,
        history_size=get_history_size(),
    )


def _parse_record_id(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError("id must be an integer")
    try:
        record_id = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError("id must be an integer") from exc
    if record_id <= 0:
        raise ValueError("id must be positive")
    return record_id


def _normalize_values(values: object, *, strict: bool) -> dict[str, str]:
    if not isinstance(values, dict):
        raise TypeError("values must be an object")
    normalized: dict[str, str] = {}
    unknown: list[str] = []
    for key, value in values.items():
        if not is_data_field(key):
            unknown.append(str(key))
            continue
        normalized[key] = normalize_value(key, value)
    if unknown and strict:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    return normalized


def _ensure_list(items: list[dict] | dict, *, name: str) -> list[dict]:
    if isinstance(items, dict):
        return [items]
    if not isinstance(items, list):
        raise TypeError(f"{name} must be dict or list[dict]")
    return items


# ============================================================
# READS
# ============================================================


def list_accounts(auth: AuthContext) -> list[dict[str, Any]]:
    return _store().list_accounts(auth.owner_id)


def get_updates(
    auth: AuthContext,
    since: int | None,
    session_id: str | None,
) -> dict[str, Any]:
    return hub.changes_since(
        hub.scope(get_tenant_id(), auth.owner_id),
        since,
        session_id=session_id,
    )


# ============================================================
# CREATE
# ============================================================


def bulk_create(
    auth: AuthContext,
    rows: list[dict],
    session_id: str | None,
) -> list[dict[str, Any]]:
    """
    Create one record per ``{temp_marker, values}`` item.

    Each returned record echoes the caller's marker so the client can match
    records to rows regardless of response order.
    """
    if not isinstance(rows, list) or not rows:
        raise ValueError("rows must be a non-empty list")

    markers: list[str] = []
    values: list[dict[str, str]] = []
    for index, item in enumerate(rows):
        if not isinstance(item, dict):
            raise TypeError(f"rows[{index}] must be an object")
        marker = item.get("temp_marker")
        if not isinstance(marker, str) or not marker.strip():
            raise ValueError(f"rows[{index}].temp_marker is required")
        if marker in markers:
            raise ValueError(f"Duplicate temp_marker: {marker}")
        markers.append(marker)
        values.append(_normalize_values(item.get("values") or {}, strict=False))

    created = _store().create_accounts(auth.owner_id, auth.user_id, values)
    results = [
        {"temp_marker": marker, **record}
        for marker, record in zip(markers, created)
    ]

    logger.info(
        "Accounts created",
        extra={
            "extra_fields": {
                "owner_id": auth.owner_id,
                "user_id": auth.user_id,
                "session_id": session_id,
                "count": len(results),
            }
        },
    )
    if results:
        _publish(auth, row_insert(created, session_id=session_id))
        _publish(auth, full_refresh(session_id=session_id))
    return results


# ============================================================
# UPDATE
# ============================================================


def batch_update(
    auth: AuthContext,
    items: list[dict] | dict,
    session_id: str | None = None,
) -> dict[str, Any]:
    """
    Apply independent field edits; an invalid item is skipped and reported
    without failing the rest.
    """
    store = _store()
    updated = 0
    skipped: list[dict[str, Any]] = []
    log_entries: list[dict[str, Any]] = []
    by_session: dict[str | None, list[FieldChange]] = {}

    for index, item in enumerate(_ensure_list(items, name="updates")):
        try:
            if not isinstance(item, dict):
                raise TypeError("update must be an object")
            record_id = _parse_record_id(item.get("id"))
            field = item.get("field")
            if not is_data_field(field):
                raise ValueError(f"Unknown field '{field}'")
            new_value = normalize_value(field, item.get("new_value"))
        except (TypeError, ValueError) as exc:
            skipped.append({"index": index, "error": str(exc)})
            continue

        result = store.update_fields(auth.owner_id, record_id, {field: new_value})
        if result is None:
            skipped.append({"index": index, "error": f"Record {record_id} not found"})
            continue

        previous, _ = result
        origin = item.get("session_id") or session_id
        change = FieldChange(
            record_id=record_id,
            field=field,
            old_value=previous.get(field),
            new_value=new_value,
        )
        by_session.setdefault(origin, []).append(change)
        log_entries.append({**change.model_dump(), "session_id": origin})
        updated += 1

    if log_entries:
        store.log_changes(auth.owner_id, auth.user_id, log_entries)
    for origin, changes in by_session.items():
        _publish(auth, changes_event(changes, session_id=origin))

    if skipped:
        logger.warning(
            "Batch update skipped items",
            extra={
                "extra_fields": {
                    "owner_id": auth.owner_id,
                    "skipped": skipped,
                }
            },
        )
    return {"updated": updated, "skipped": skipped}


def patch_account(
    auth: AuthContext,
    record_id: int,
    values: dict,
    session_id: str | None = None,
) -> dict[str, Any]:
    normalized = _normalize_values(values, strict=True)
    if not normalized:
        raise ValueError("No updatable fields provided")

    store = _store()
    result = store.update_fields(auth.owner_id, record_id, normalized)
    if result is None:
        raise AccountNotFoundError(f"Record {record_id} not found")
    previous, record = result

    store.log_changes(
        auth.owner_id,
        auth.user_id,
        [
            {
                "record_id": record_id,
                "field": key,
                "old_value": previous.get(key),
                "new_value": value,
                "session_id": session_id,
            }
            for key, value in normalized.items()
        ],
    )
    if len(normalized) == 1:
        field, value = next(iter(normalized.items()))
        event = field_update(
            record_id,
            field,
            previous.get(field),
            value,
            session_id=session_id,
        )
    else:
        event = row_update(record, session_id=session_id)
    _publish(auth, event)
    return record


def set_status(
    auth: AuthContext,
    record_id: int,
    status: object,
    session_id: str | None = None,
    *,
    exclude: Subscriber | None = None,
) -> dict[str, Any]:
    if status is None:
        raise ValueError("status is required")
    value = normalize_value("status", status)

    store = _store()
    result = store.update_fields(auth.owner_id, record_id, {"status": value})
    if result is None:
        raise AccountNotFoundError(f"Record {record_id} not found")
    previous, record = result

    store.log_changes(
        auth.owner_id,
        auth.user_id,
        [
            {
                "record_id": record_id,
                "field": "status",
                "old_value": previous.get("status"),
                "new_value": value,
                "session_id": session_id,
            }
        ],
    )
    _publish(
        auth,
        cross_tab_status(record_id, value, session_id=session_id),
        exclude=exclude,
    )
    return record


# ============================================================
# DELETE
# ============================================================


def delete_accounts(
    auth: AuthContext,
    record_ids: list,
    session_id: str | None = None,
) -> int:
    if not isinstance(record_ids, list):
        raise TypeError("ids must be a list")
    ids = [_parse_record_id(value) for value in record_ids]
    if not ids:
        return 0

    deleted = _store().delete_accounts(auth.owner_id, ids)
    logger.info(
        "Accounts deleted",
        extra={
            "extra_fields": {
                "owner_id": auth.owner_id,
                "requested": len(ids),
                "deleted": deleted,
            }
        },
    )
    if deleted:
        _publish(auth, full_refresh(session_id=session_id))
    return deleted
