"""
Transports feeding broadcast events into a listener.

``WebSocketChannel`` is the primary path; ``PollingChannel`` covers
environments where the socket cannot be kept open.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from apps.adsheet.core.auth import SESSION_HEADER
from apps.adsheet.core.events import STATUS_UPDATE_MESSAGE, EventType
from apps.adsheet.sync.client import PersistenceClient, PersistenceError
from shared.constants import (
    SYNC_POLL_INTERVAL,
    SYNC_WS_MAX_RECONNECTS,
    SYNC_WS_RECONNECT_DELAY,
    SYNC_WS_RECONNECT_FACTOR,
    SYNC_WS_RECONNECT_MAX_DELAY,
)
from shared.logger import get_logger

logger = get_logger("AdSheet Channel")

EventHandler = Callable[[dict[str, Any]], Awaitable[Any]]

REFRESH_EVENT = {"type": EventType.FULL_REFRESH.value}


# ============================================================
# POLLING
# ============================================================


class PollingChannel:
    def __init__(
        self,
        client: PersistenceClient,
        handler: EventHandler,
        *,
        interval: float = SYNC_POLL_INTERVAL,
    ) -> None:
        self.client = client
        self.handler = handler
        self.interval = interval
        self.cursor: int | None = None
        self._stopped = asyncio.Event()

    async def poll_once(self) -> int:
        """
        Fetch and deliver events published since the last cursor.

        The first poll only establishes the cursor. Returns how many events
        were delivered.
        """
        data = await self.client.fetch_updates(self.cursor)
        first_poll = self.cursor is None
        cursor = data.get("cursor")
        events = data.get("events") or []

        delivered = 0
        if data.get("needs_full_refresh") and not first_poll:
            await self.handler(dict(REFRESH_EVENT))
            delivered += 1
        elif not first_poll:
            for event in events:
                if isinstance(event, dict):
                    await self.handler(event)
                    delivered += 1

        if isinstance(cursor, int):
            self.cursor = cursor
        return delivered

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.poll_once()
            except PersistenceError as exc:
                logger.warning(
                    "Polling failed",
                    extra={"extra_fields": {"error": str(exc)}},
                )
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stopped.set()


# ============================================================
# WEBSOCKET
# ============================================================


class WebSocketChannel:
    def __init__(
        self,
        url: str,
        handler: EventHandler,
        *,
        session_id: str,
        headers: dict[str, str] | None = None,
        reconnect_delay: float = SYNC_WS_RECONNECT_DELAY,
        reconnect_factor: float = SYNC_WS_RECONNECT_FACTOR,
        max_delay: float = SYNC_WS_RECONNECT_MAX_DELAY,
        max_reconnects: int = SYNC_WS_MAX_RECONNECTS,
    ) -> None:
        separator = "&" if "?" in url else "?"
        self.url = f"{url}{separator}{urlencode({'session_id': session_id})}"
        self.handler = handler
        self.session_id = session_id
        self.headers = {**(headers or {}), SESSION_HEADER: session_id}
        self.reconnect_delay = reconnect_delay
        self.reconnect_factor = reconnect_factor
        self.max_delay = max_delay
        self.max_reconnects = max_reconnects
        self.connected = asyncio.Event()
        self._connection = None
        self._stopped = False

    def backoff(self, attempt: int) -> float:
        return min(self.reconnect_delay * self.reconnect_factor ** max(attempt - 1, 0), self.max_delay)

    async def run(self) -> None:
        attempts = 0
        ever_connected = False
        while not self._stopped:
            try:
                async with connect(self.url, additional_headers=self.headers) as connection:
                    self._connection = connection
                    self.connected.set()
                    if ever_connected:
                        # Events published while disconnected are gone.
                        await self.handler(dict(REFRESH_EVENT))
                    ever_connected = True
                    attempts = 0
                    async for message in connection:
                        await self._deliver(message)
            except (OSError, WebSocketException) as exc:
                logger.warning(
                    "WebSocket disconnected",
                    extra={"extra_fields": {"error": str(exc), "attempt": attempts}},
                )
            finally:
                self._connection = None
                self.connected.clear()

            if self._stopped:
                break
            attempts += 1
            if attempts > self.max_reconnects:
                logger.error(
                    "WebSocket reconnect attempts exhausted",
                    extra={"extra_fields": {"attempts": attempts - 1}},
                )
                break
            await asyncio.sleep(self.backoff(attempts))

    async def _deliver(self, message: str | bytes) -> None:
        try:
            payload = json.loads(message)
        except ValueError:
            logger.warning("Ignoring non-JSON WebSocket message")
            return
        if isinstance(payload, dict):
            await self.handler(payload)

    async def send_status(self, record_id: int, status: str) -> bool:
        connection = self._connection
        if connection is None:
            return False
        await connection.send(
            json.dumps(
                {
                    "type": STATUS_UPDATE_MESSAGE,
                    "record_id": record_id,
                    "status": status,
                    "session_id": self.session_id,
                }
            )
        )
        return True

    async def stop(self) -> None:
        self._stopped = True
        if self._connection is not None:
            await self._connection.close()
