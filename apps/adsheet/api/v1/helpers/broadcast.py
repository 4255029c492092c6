"""
Owner-scoped publish/subscribe for grid sessions.

Writes happen in worker threads (sync routes) while WebSocket subscribers
live on the event loop, so delivery hops threads with
``call_soon_threadsafe``. Every published event is also kept in a bounded
per-owner history that backs the HTTP polling fallback.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from apps.adsheet.core.events import BroadcastEvent, EventType
from shared.constants import BROADCAST_HISTORY_SIZE
from shared.logger import get_logger

logger = get_logger("AdSheet Broadcast")

# Delivered to the originating session too.
_ALWAYS_DELIVERED = {EventType.BATCH_UPDATE.value}

ScopeKey = tuple[str, int]


@dataclass(eq=False)
class Subscriber:
    scope: ScopeKey
    session_id: str | None
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


class BroadcastHub:
    def __init__(self, history_size: int = BROADCAST_HISTORY_SIZE) -> None:
        self.history_size = history_size
        self._lock = threading.Lock()
        self._cursor = itertools.count(1)
        self._last_cursor = 0
        self._subscribers: dict[ScopeKey, set[Subscriber]] = {}
        self._history: dict[ScopeKey, deque[tuple[int, dict[str, Any]]]] = {}
        self._evicted_upto: dict[ScopeKey, int] = {}

    @staticmethod
    def scope(tenant_id: str | None, owner_id: int) -> ScopeKey:
        return (tenant_id or "default", int(owner_id))

    # ============================================================
    # SUBSCRIPTIONS
    # ============================================================

    def subscribe(self, scope: ScopeKey, session_id: str | None = None) -> Subscriber:
        subscriber = Subscriber(
            scope=scope,
            session_id=session_id,
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscribers.setdefault(scope, set()).add(subscriber)
        logger.info(
            "Subscriber joined",
            extra={"extra_fields": {"owner_id": scope[1], "session_id": session_id}},
        )
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscriber.scope)
            if subscribers is not None:
                subscribers.discard(subscriber)
                if not subscribers:
                    del self._subscribers[subscriber.scope]

    def subscriber_count(self, scope: ScopeKey) -> int:
        with self._lock:
            return len(self._subscribers.get(scope, ()))

    # ============================================================
    # PUBLISH
    # ============================================================

    def publish(
        self,
        scope: ScopeKey,
        event: BroadcastEvent,
        *,
        exclude: Subscriber | None = None,
        history_size: int | None = None,
    ) -> int:
        message = event.to_wire()
        limit = history_size or self.history_size
        with self._lock:
            cursor = next(self._cursor)
            self._last_cursor = cursor
            history = self._history.get(scope)
            if history is None:
                history = deque()
                self._history[scope] = history
            history.append((cursor, message))
            while len(history) > limit:
                evicted, _ = history.popleft()
                self._evicted_upto[scope] = evicted
            targets = [
                subscriber
                for subscriber in self._subscribers.get(scope, ())
                if subscriber is not exclude
            ]

        delivered = 0
        for subscriber in targets:
            try:
                subscriber.loop.call_soon_threadsafe(subscriber.queue.put_nowait, message)
            except RuntimeError:
                # Loop already closed; the socket is gone.
                self.unsubscribe(subscriber)
                continue
            delivered += 1

        logger.info(
            "Broadcast published",
            extra={
                "extra_fields": {
                    "type": message.get("type"),
                    "owner_id": scope[1],
                    "session_id": message.get("session_id"),
                    "cursor": cursor,
                    "delivered": delivered,
                }
            },
        )
        return delivered

    # ============================================================
    # POLLING
    # ============================================================

    def changes_since(
        self,
        scope: ScopeKey,
        since: int | None,
        *,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            current = self._last_cursor
            if since is None:
                return {"cursor": current, "events": [], "needs_full_refresh": False}
            if since < self._evicted_upto.get(scope, 0):
                return {"cursor": current, "events": [], "needs_full_refresh": True}
            events = [
                message
                for cursor, message in self._history.get(scope, ())
                if cursor > since
                and (
                    session_id is None
                    or message.get("session_id") != session_id
                    or message.get("type") in _ALWAYS_DELIVERED
                )
            ]
        return {"cursor": current, "events": events, "needs_full_refresh": False}

    def reset(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._history.clear()
            self._evicted_upto.clear()
            self._cursor = itertools.count(1)
            self._last_cursor = 0


hub = BroadcastHub()
