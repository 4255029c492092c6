from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

import httpx

from apps.adsheet.core.auth import SESSION_HEADER, AuthContext
from apps.adsheet.core.columns import display_id, is_data_field, normalize_value
from apps.adsheet.sync.tracker import PendingEdit
from shared.constants import SYNC_BULK_CHUNK_SIZE, SYNC_HTTP_TIMEOUT
from shared.logger import get_logger

logger = get_logger("AdSheet Persistence")

ACCOUNTS_PATH = "/v1/ad-accounts"


class PersistenceError(Exception):
    """
    A failed call to the persistence API. Always retryable from the grid's
    point of view; nothing here is fatal to the session.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CreatedRow:
    temporary_marker: str
    server_id: int
    sequence_number: int
    owner_id: int
    record: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def display_id(self) -> str:
        return display_id(self.sequence_number, self.owner_id)


@dataclass
class SaveReport:
    saved: list[PendingEdit] = field(default_factory=list)
    failed: list[tuple[PendingEdit, str]] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


def normalize_edit(edit: PendingEdit) -> PendingEdit:
    return replace(
        edit,
        old_value=normalize_value(edit.field, edit.old_value),
        new_value=normalize_value(edit.field, edit.new_value),
    )


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "meta" in payload and "data" in payload:
        return payload["data"]
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("detail") or error)
        if payload.get("detail"):
            return str(payload["detail"])
    return f"HTTP {response.status_code}"


def _parse_created(item: Any) -> CreatedRow | None:
    if not isinstance(item, dict):
        return None
    marker = item.get("temp_marker")
    try:
        server_id = int(item["id"])
        sequence_number = int(item["local_id"])
        owner_id = int(item["owner_id"])
    except (KeyError, TypeError, ValueError):
        return None
    if not isinstance(marker, str) or not marker:
        return None
    return CreatedRow(
        temporary_marker=marker,
        server_id=server_id,
        sequence_number=sequence_number,
        owner_id=owner_id,
        record=item,
    )


class PersistenceClient:
    """
    Async client for the ad-account persistence API.

    Every request carries the session id so the server can stamp the
    broadcast it publishes after the write.
    """

    def __init__(
        self,
        base_url: str,
        auth: AuthContext,
        session_id: str,
        *,
        api_key: str | None = None,
        tenant_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = SYNC_HTTP_TIMEOUT,
        chunk_size: int = SYNC_BULK_CHUNK_SIZE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.session_id = session_id
        self.chunk_size = max(chunk_size, 1)
        self._headers = {**auth.headers(), SESSION_HEADER: session_id}
        if api_key:
            self._headers["X-API-Key"] = api_key
        if tenant_id:
            self._headers["X-Tenant-Id"] = tenant_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PersistenceClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ============================================================
    # TRANSPORT
    # ============================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                headers={**self._headers, **(headers or {})},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise PersistenceError(
                f"{method} {path} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return _unwrap(response.json())
        except ValueError as exc:
            raise PersistenceError(f"{method} {path} returned invalid JSON") from exc

    # ============================================================
    # FIELD EDITS
    # ============================================================

    async def flush(self, edits: Iterable[PendingEdit]) -> SaveReport:
        """
        Persist queued edits with one batch call, falling back to one
        PATCH per edit when the batch call fails.
        """
        normalized = [
            normalize_edit(edit)
            for edit in edits
            if edit.record_id and is_data_field(edit.field)
        ]
        if not normalized:
            return SaveReport()

        try:
            await self._request(
                "POST",
                f"{ACCOUNTS_PATH}/batch-update",
                json=[edit.to_payload() for edit in normalized],
            )
            return SaveReport(saved=normalized)
        except PersistenceError as exc:
            logger.warning(
                "Batch update failed, retrying per record",
                extra={
                    "extra_fields": {
                        "session_id": self.session_id,
                        "count": len(normalized),
                        "error": str(exc),
                    }
                },
            )

        report = SaveReport(used_fallback=True)
        for edit in normalized:
            try:
                await self.patch_record(edit.record_id, {edit.field: edit.new_value})
            except PersistenceError as exc:
                logger.error(
                    "Field save failed",
                    extra={
                        "extra_fields": {
                            "record_id": edit.record_id,
                            "field": edit.field,
                            "error": str(exc),
                        }
                    },
                )
                report.failed.append((edit, str(exc)))
            else:
                report.saved.append(edit)
        return report

    async def patch_record(self, record_id: int, values: dict[str, Any]) -> dict[str, Any]:
        payload = {
            key: normalize_value(key, value)
            for key, value in values.items()
            if is_data_field(key)
        }
        data = await self._request("PATCH", f"{ACCOUNTS_PATH}/{record_id}", json=payload)
        return data if isinstance(data, dict) else {}

    async def update_status(self, record_id: int, status: str) -> dict[str, Any]:
        data = await self._request(
            "PUT",
            f"{ACCOUNTS_PATH}/{record_id}/status",
            json={"status": status, "session_id": self.session_id},
        )
        return data if isinstance(data, dict) else {}

    # ============================================================
    # ROWS
    # ============================================================

    async def create_batch(
        self,
        rows: Iterable[tuple[str, dict[str, Any]]],
    ) -> list[CreatedRow]:
        """
        Bulk-create rows given as ``(temp_marker, values)`` pairs.

        The returned tuples come back in no guaranteed order; callers match
        them by marker. Malformed tuples are skipped.
        """
        items = [
            {
                "temp_marker": marker,
                "values": {
                    key: normalize_value(key, value)
                    for key, value in values.items()
                    if is_data_field(key)
                },
            }
            for marker, values in rows
        ]
        created: list[CreatedRow] = []
        for start in range(0, len(items), self.chunk_size):
            chunk = items[start:start + self.chunk_size]
            data = await self._request(
                "POST",
                f"{ACCOUNTS_PATH}/bulk",
                json={"rows": chunk, "session_id": self.session_id},
            )
            raw_rows = data.get("rows") if isinstance(data, dict) else None
            if not isinstance(raw_rows, list):
                raise PersistenceError("Bulk create response has no rows")
            for item in raw_rows:
                parsed = _parse_created(item)
                if parsed is None:
                    logger.warning(
                        "Skipping malformed bulk create row",
                        extra={"extra_fields": {"row": item}},
                    )
                    continue
                created.append(parsed)
        return created

    async def fetch_records(self, *, no_cache: bool = True) -> list[dict[str, Any]]:
        headers = {"Cache-Control": "no-cache", "Pragma": "no-cache"} if no_cache else None
        data = await self._request("GET", ACCOUNTS_PATH, headers=headers)
        if not isinstance(data, list):
            raise PersistenceError("Account list response is not a list")
        return [item for item in data if isinstance(item, dict)]

    async def delete_records(self, record_ids: Iterable[int]) -> int:
        ids = [int(record_id) for record_id in record_ids]
        if not ids:
            return 0
        data = await self._request(
            "DELETE",
            ACCOUNTS_PATH,
            json={"ids": ids, "session_id": self.session_id},
        )
        return int(data.get("deleted", 0)) if isinstance(data, dict) else 0

    async def fetch_updates(self, since: int | None) -> dict[str, Any]:
        params: dict[str, Any] = {"session_id": self.session_id}
        if since is not None:
            params["since"] = since
        data = await self._request("GET", f"{ACCOUNTS_PATH}/updates", params=params)
        if not isinstance(data, dict):
            raise PersistenceError("Updates response is not an object")
        return data
