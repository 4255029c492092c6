"""
Response envelope shared by every mounted app.

Successful JSON bodies travel as ``{meta, data}``, failures as
``{meta, error}``. Wrapping is idempotent: a body that already carries an
envelope (a sub-app response passing through the root middleware) is
unwrapped before it is wrapped again.
"""

from __future__ import annotations

from datetime import datetime
import json
import time
import uuid
from zoneinfo import ZoneInfo

from fastapi import Request
from starlette.responses import JSONResponse, Response

from shared.tenant import get_timezone
from shared.utils import format_hms

SESSION_HEADER = "x-session-id"


def ensure_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
    return request_id


def is_docs_path(path: str) -> bool:
    normalized = (path or "").rstrip("/")
    return normalized.endswith(("/docs", "/docs/oauth2-redirect", "/redoc", "/openapi.json"))


def safe_parse_json(payload: bytes | str) -> object | None:
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        return json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def safe_decode_text(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")


# ======================================================
# META
# ======================================================


def build_meta(
    request: Request,
    *,
    duration_s: float | None = None,
) -> dict[str, object]:
    if duration_s is None:
        start_time = getattr(request.state, "start_time", None)
        if isinstance(start_time, (int, float)):
            duration_s = time.perf_counter() - start_time
        else:
            duration_s = 0.0

    meta: dict[str, object] = {
        "timestamp": datetime.now(ZoneInfo(get_timezone())).isoformat(),
        "duration_ms": int(duration_s * 1000),
        "duration_hms": format_hms(duration_s),
        "client_id": getattr(request.state, "client_id", "Not Found"),
        "request_id": ensure_request_id(request),
    }
    session_id = request.headers.get(SESSION_HEADER)
    if session_id:
        meta["session_id"] = session_id
    return meta


def normalize_error_payload(raw: object | None) -> dict[str, object]:
    if isinstance(raw, dict):
        payload = dict(raw)
    elif raw is None:
        payload = {}
    else:
        payload = {"detail": raw}

    if "message" in payload:
        return payload

    detail = payload.get("detail")
    err = payload.get("error")
    if isinstance(detail, str) and detail:
        payload["message"] = detail
    elif isinstance(detail, list) and detail:
        payload["message"] = "Validation error"
    elif isinstance(err, str) and err:
        payload["message"] = err
    else:
        payload["message"] = "Request failed"
    return payload


def wrap_success(
    data: object,
    request: Request,
    *,
    duration_s: float | None = None,
) -> dict[str, object]:
    return {
        "meta": build_meta(request, duration_s=duration_s),
        "data": data,
    }


def wrap_error(
    error: object | None,
    request: Request,
    *,
    duration_s: float | None = None,
) -> dict[str, object]:
    return {
        "meta": build_meta(request, duration_s=duration_s),
        "error": normalize_error_payload(error),
    }


# ======================================================
# ENVELOPE
# ======================================================


def _unwrap(payload: object | None, key: str) -> object | None:
    if isinstance(payload, dict) and "meta" in payload and key in payload:
        return payload.get(key)
    return payload


def _should_wrap(request: Request, response: Response, content_type: str) -> bool:
    if is_docs_path(request.url.path or ""):
        return False
    if response.status_code in {204, 304}:
        return False
    return "application/json" in (content_type or "").lower()


def envelope_response(
    request: Request,
    response: Response,
    body: bytes,
    *,
    duration_s: float,
) -> tuple[Response, object | None]:
    """
    Rebuild a streamed response around its buffered body.

    Returns the response to send and the decoded body for request logging.
    """
    headers = dict(response.headers)
    headers.pop("content-length", None)

    content_type = response.headers.get("content-type", "")
    body_json = None
    if body and "application/json" in (content_type or "").lower():
        body_json = safe_parse_json(body)

    if _should_wrap(request, response, content_type):
        if body_json is not None:
            raw = body_json
        else:
            raw = safe_decode_text(body) if body else None
        if response.status_code < 400:
            payload = wrap_success(_unwrap(raw, "data"), request, duration_s=duration_s)
        else:
            payload = wrap_error(_unwrap(raw, "error"), request, duration_s=duration_s)

        headers.pop("content-type", None)
        wrapped = JSONResponse(
            content=payload,
            status_code=response.status_code,
            headers=headers,
            background=response.background,
        )
        return wrapped, payload

    passthrough = Response(
        content=body,
        status_code=response.status_code,
        headers=headers,
        media_type=response.media_type,
        background=response.background,
    )
    if not body:
        return passthrough, None
    return passthrough, body_json if body_json is not None else safe_decode_text(body)
