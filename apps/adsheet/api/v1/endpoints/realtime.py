from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from apps.adsheet.api.v1.helpers.accounts import AccountNotFoundError, set_status
from apps.adsheet.api.v1.helpers.broadcast import Subscriber, hub
from apps.adsheet.api.v1.helpers.config import validate_tenant_config
from apps.adsheet.core.auth import (
    DIRECTOR_HEADER,
    ROLE_HEADER,
    SESSION_HEADER,
    USER_HEADER,
    AuthContext,
    AuthError,
)
from apps.adsheet.core.events import STATUS_UPDATE_MESSAGE
from shared.logger import get_logger, reset_session_id, set_session_id
from shared.middleware import authenticate_connection
from shared.tenant import TenantConfigError, tenant_scope

router = APIRouter()

logger = get_logger("AdSheet Realtime")

CLOSE_UNAUTHORIZED = 4401
CLOSE_BAD_REQUEST = 4400

_QUERY_ALIASES = {
    USER_HEADER: "user_id",
    ROLE_HEADER: "role",
    DIRECTOR_HEADER: "director_id",
}


def _connection_auth(websocket: WebSocket) -> AuthContext:
    # Browsers cannot set headers on an upgrade; fall back to query params.
    values: dict[str, str] = {}
    for header, alias in _QUERY_ALIASES.items():
        value = websocket.headers.get(header) or websocket.query_params.get(alias)
        if value:
            values[header] = value
    return AuthContext.from_mapping(values)


async def _send_events(websocket: WebSocket, subscriber: Subscriber) -> None:
    while True:
        message = await subscriber.queue.get()
        await websocket.send_json(message)


async def _relay_status(
    websocket: WebSocket,
    auth: AuthContext,
    subscriber: Subscriber,
    message: dict,
) -> None:
    try:
        record_id = int(message["record_id"])
        status = message["status"]
    except (KeyError, TypeError, ValueError):
        await websocket.send_json({"type": "error", "detail": "record_id and status are required"})
        return

    session_id = message.get("session_id") or subscriber.session_id
    try:
        await run_in_threadpool(
            set_status,
            auth,
            record_id,
            status,
            session_id,
            exclude=subscriber,
        )
    except AccountNotFoundError as exc:
        await websocket.send_json({"type": "error", "detail": str(exc)})
    except (TypeError, ValueError) as exc:
        await websocket.send_json({"type": "error", "detail": str(exc)})


async def _receive_messages(
    websocket: WebSocket,
    auth: AuthContext,
    subscriber: Subscriber,
) -> None:
    while True:
        text = await websocket.receive_text()
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON WebSocket message")
            continue
        if not isinstance(message, dict):
            continue
        if message.get("type") == STATUS_UPDATE_MESSAGE:
            await _relay_status(websocket, auth, subscriber, message)


# ============================================================
# WEBSOCKET
# ============================================================


@router.websocket("/ws")
async def account_updates_socket(websocket: WebSocket):
    client_id = authenticate_connection(websocket)
    if client_id is None:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    tenant_header = websocket.headers.get("x-tenant-id") or websocket.query_params.get("tenant")
    try:
        auth = _connection_auth(websocket)
    except AuthError as exc:
        logger.warning(
            "WebSocket rejected",
            extra={"extra_fields": {"client_id": client_id, "error": str(exc)}},
        )
        await websocket.close(code=CLOSE_BAD_REQUEST)
        return

    session_id = (
        websocket.query_params.get("session_id")
        or websocket.headers.get(SESSION_HEADER)
        or None
    )

    session_token = set_session_id(session_id)
    try:
        with tenant_scope(tenant_header) as tenant_id:
            validate_tenant_config(tenant_id)
            # Subscribe first so nothing published during the handshake is lost.
            subscriber = hub.subscribe(hub.scope(tenant_id, auth.owner_id), session_id)
            sender = None
            try:
                await websocket.accept()
                sender = asyncio.create_task(_send_events(websocket, subscriber))
                await _receive_messages(websocket, auth, subscriber)
            except WebSocketDisconnect:
                pass
            finally:
                if sender is not None:
                    sender.cancel()
                hub.unsubscribe(subscriber)
                logger.info(
                    "Subscriber left",
                    extra={
                        "extra_fields": {
                            "owner_id": auth.owner_id,
                            "session_id": session_id,
                        }
                    },
                )
    except TenantConfigError as exc:
        logger.warning(
            "WebSocket rejected",
            extra={"extra_fields": {"client_id": client_id, "error": str(exc)}},
        )
        await websocket.close(code=CLOSE_BAD_REQUEST)
    finally:
        reset_session_id(session_token)
