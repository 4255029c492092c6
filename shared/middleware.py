from __future__ import annotations

import hmac
import os
import re
import time

from fastapi import Request
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse, Response

from shared.constants import LOG_LEVEL
from shared.logger import (
    add_debug_handler,
    create_request_debug_handler,
    get_logger,
    remove_debug_handler,
    reset_client_id,
    reset_request_id,
    reset_session_id,
    set_client_id,
    set_request_id,
    set_session_id,
)
from shared.response import (
    SESSION_HEADER,
    ensure_request_id,
    envelope_response,
    is_docs_path,
    safe_decode_text,
    safe_parse_json,
    wrap_error,
)
from shared.tenant import (
    TenantConfigError,
    TenantConfigValidationError,
    get_tenant_id,
    reset_tenant_context,
    set_tenant_context,
)

_API_KEY_REGISTRY: dict[str, str] | None = None
_API_LOGGER = get_logger("api")

DEFAULT_PUBLIC_PATHS = frozenset({"/", "/ping"})

_TENANT_NOT_FOUND_RE = re.compile(r"Tenant config not found for '([^']+)'")


# ======================================================
# PATHS
# ======================================================


def _normalize_path(path: str | None) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _get_public_paths(request: Request) -> set[str]:
    paths = getattr(request.app.state, "public_paths", None)
    if paths is None:
        return set(DEFAULT_PUBLIC_PATHS)
    if isinstance(paths, str):
        paths = [paths]
    normalized = {_normalize_path(str(value)) for value in paths if value is not None}
    return normalized or set(DEFAULT_PUBLIC_PATHS)


def _is_open_path(request: Request) -> bool:
    path = request.url.path or ""
    return is_docs_path(path) or _normalize_path(path) in _get_public_paths(request)


def _duration_since(request: Request, fallback_start: float) -> float:
    start_time = getattr(request.state, "start_time", None)
    if isinstance(start_time, (int, float)):
        return time.perf_counter() - start_time
    return time.perf_counter() - fallback_start


def _error_response(
    request: Request,
    *,
    status_code: int,
    detail: object | None,
    started: float,
) -> JSONResponse:
    payload = wrap_error(detail, request, duration_s=_duration_since(request, started))
    return JSONResponse(status_code=status_code, content=payload)


# ======================================================
# TIMING
# ======================================================


async def timing_middleware(request: Request, call_next):
    # Set start time BEFORE route executes
    if getattr(request.state, "start_time", None) is None:
        request.state.start_time = time.perf_counter()

    return await call_next(request)


# ======================================================
# TENANT CONTEXT
# ======================================================


def _resolve_tenant_validator(path: str, registry: object) -> tuple[str | None, object]:
    """
    Pick the validator registered for the longest matching path prefix.
    Entries are ``(prefixes, app_name, validator)``.
    """
    best: tuple[int, str | None, object] = (-1, None, None)
    for entry in registry or ():
        try:
            prefixes, app_name, validator = entry
        except (TypeError, ValueError):
            continue
        if not callable(validator):
            continue
        if isinstance(prefixes, str):
            prefixes = (prefixes,)
        matched = [len(prefix) for prefix in prefixes if path.startswith(prefix)]
        if matched and max(matched) > best[0]:
            best = (max(matched), app_name, validator)
    return best[1], best[2]


def _tenant_error_detail(exc: TenantConfigError, app_name: str | None) -> object:
    if isinstance(exc, TenantConfigValidationError):
        return exc.to_payload(app_name)
    text = str(exc)
    match = _TENANT_NOT_FOUND_RE.search(text)
    if match:
        return {"detail": f"Tenant ({match.group(1)}) not found!"}
    return {"detail": text}


async def tenant_context_middleware(request: Request, call_next):
    started = time.perf_counter()
    path = request.url.path or ""
    tenant_header = request.headers.get("x-tenant-id")
    if _is_open_path(request) or (not path.startswith("/api") and not tenant_header):
        request.state.tenant_id = None
        return await call_next(request)

    if not tenant_header:
        return _error_response(
            request,
            status_code=400,
            detail="Missing X-Tenant-Id header",
            started=started,
        )

    try:
        token = set_tenant_context(tenant_header)
    except TenantConfigError as exc:
        return _error_response(
            request,
            status_code=400,
            detail=_tenant_error_detail(exc, None),
            started=started,
        )

    app_name = None
    try:
        request.state.tenant_id = get_tenant_id()
        app_name, validator = _resolve_tenant_validator(
            path,
            getattr(request.app.state, "tenant_validator_registry", None),
        )
        if app_name:
            request.state.tenant_app = app_name
        if validator is None:
            validator = getattr(request.app.state, "tenant_validator", None)
        if callable(validator):
            validator()
    except TenantConfigError as exc:
        reset_tenant_context(token)
        return _error_response(
            request,
            status_code=400,
            detail=_tenant_error_detail(exc, app_name),
            started=started,
        )

    try:
        return await call_next(request)
    finally:
        reset_tenant_context(token)


# ======================================================
# API KEYS
# ======================================================


def _parse_api_key_registry(raw: str) -> dict[str, str]:
    """
    ``API_KEY_REGISTRY`` is ``client_id:key`` pairs separated by commas.
    """
    registry: dict[str, str] = {}
    for entry in (item.strip() for item in raw.split(",")):
        if not entry:
            continue
        client_id, sep, api_key = entry.partition(":")
        client_id, api_key = client_id.strip(), api_key.strip()
        if not sep or not client_id or not api_key:
            raise ValueError("Invalid API_KEY_REGISTRY entry format")
        if client_id in registry:
            raise ValueError(f"Duplicate client_id in API_KEY_REGISTRY: {client_id}")
        registry[client_id] = api_key
    return registry


def _get_api_key_registry() -> dict[str, str]:
    global _API_KEY_REGISTRY

    if _API_KEY_REGISTRY is None:
        raw = os.getenv("API_KEY_REGISTRY", "").strip()
        _API_KEY_REGISTRY = _parse_api_key_registry(raw) if raw else {}
    return _API_KEY_REGISTRY


def _extract_api_key(connection: HTTPConnection) -> str | None:
    api_key = (connection.headers.get("x-api-key") or "").strip()
    if api_key:
        return api_key

    auth_header = connection.headers.get("authorization") or ""
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


def _match_api_key(api_key: str, registry: dict[str, str]) -> str | None:
    for client_id, expected in registry.items():
        if hmac.compare_digest(api_key, expected):
            return client_id
    return None


async def api_key_auth_middleware(request: Request, call_next):
    started = time.perf_counter()
    if _is_open_path(request) or request.method == "OPTIONS":
        return await call_next(request)
    path = request.url.path or ""
    is_api_route = path == "/api" or path.startswith("/api/")

    try:
        registry = _get_api_key_registry()
    except ValueError:
        if is_api_route:
            return _error_response(
                request,
                status_code=500,
                detail="API key registry is misconfigured",
                started=started,
            )
        registry = {}

    if not registry and is_api_route:
        return _error_response(
            request,
            status_code=500,
            detail="API key registry is not configured",
            started=started,
        )

    api_key = _extract_api_key(request)
    client_id = _match_api_key(api_key, registry) if api_key and registry else None
    if client_id:
        label = client_id
    elif api_key:
        label = "Not Found"
    else:
        label = "Unauthenticated"

    request.state.client_id = label
    client_token = set_client_id(label)
    try:
        if is_api_route and not client_id:
            return _error_response(
                request,
                status_code=401,
                detail="Invalid API key" if api_key else "Missing API key",
                started=started,
            )
        response = await call_next(request)
        response.headers["X-API-Client"] = label
        return response
    finally:
        reset_client_id(client_token)


def authenticate_connection(connection: HTTPConnection) -> str | None:
    """
    Resolve the API client for connections the HTTP middleware never sees
    (WebSocket upgrades). Browsers cannot set headers on an upgrade request,
    so an ``api_key`` query param is accepted as well.
    """
    try:
        registry = _get_api_key_registry()
    except ValueError:
        return None
    if not registry:
        return None

    api_key = _extract_api_key(connection)
    if not api_key:
        api_key = (connection.query_params.get("api_key") or "").strip() or None
    if not api_key:
        return None
    return _match_api_key(api_key, registry)


# ======================================================
# REQUEST / RESPONSE LOGGING
# ======================================================


def _query_params(request: Request) -> dict[str, object] | None:
    result: dict[str, object] = {}
    for key, value in request.query_params.multi_items():
        existing = result.get(key)
        if existing is None:
            result[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            result[key] = [existing, value]
    return result or None


def _is_idle_poll_response(
    request: Request,
    response: Response,
    response_body: object | None,
) -> bool:
    # Polling clients hit /updates every few seconds; empty polls are noise.
    if request.method != "GET" or response.status_code >= 400:
        return False
    if not _normalize_path(request.url.path or "").endswith("/ad-accounts/updates"):
        return False
    if not isinstance(response_body, dict):
        return False
    payload = response_body.get("data", response_body)
    return (
        isinstance(payload, dict)
        and not payload.get("events")
        and not payload.get("needs_full_refresh")
    )


async def request_response_logger_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = ensure_request_id(request)
    request_token = set_request_id(request_id)
    session_token = set_session_id(request.headers.get(SESSION_HEADER))
    debug_handler = None

    if LOG_LEVEL == "DEBUG":
        debug_handler = create_request_debug_handler(request_id)
        add_debug_handler(debug_handler)

    try:
        body_bytes = await request.body()

        async def receive() -> dict:
            return {"type": "http.request", "body": body_bytes, "more_body": False}

        request._receive = receive  # type: ignore[attr-defined]

        response = await call_next(request)

        response_body = b""
        async for chunk in response.body_iterator:
            response_body += chunk

        duration_s = _duration_since(request, started)
        response, response_body_out = envelope_response(
            request,
            response,
            response_body,
            duration_s=duration_s,
        )

        if _is_idle_poll_response(request, response, response_body_out):
            return response

        if body_bytes:
            request_json = safe_parse_json(body_bytes)
            request_body = request_json if request_json is not None else safe_decode_text(body_bytes)
        else:
            request_body = None

        _API_LOGGER.info(
            "HTTP request/response",
            extra={
                "extra_fields": {
                    "event": "http_request_response",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int(duration_s * 1000),
                    "tenant_id": getattr(request.state, "tenant_id", None),
                    "request_host": request.headers.get("x-forwarded-host") or request.headers.get("host"),
                    "request_scheme": request.headers.get("x-forwarded-proto") or request.url.scheme,
                    "request_body": request_body,
                    "request_params": _query_params(request),
                    "response_body": response_body_out,
                }
            },
        )
        return response
    finally:
        if debug_handler:
            remove_debug_handler(debug_handler)
        reset_session_id(session_token)
        reset_request_id(request_token)
