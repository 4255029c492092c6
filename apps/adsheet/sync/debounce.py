from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

from shared.logger import get_logger

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

logger = get_logger("AdSheet Sync")


class DebouncedQueue(Generic[K, V]):
    """
    Keyed queue flushed by a single restartable timer.

    ``put`` coalesces by key (``merge`` decides how an existing item absorbs
    a newer one) and restarts the timer. When the timer fires, the whole
    queue is handed to ``handler`` and cleared before the handler runs, so
    items added during an in-flight flush start a fresh queue. A timer that
    fires while a flush is in flight or while the queue is paused re-arms
    once the blocker clears.
    A flush that has started always runs to completion; ``cancel`` only
    drops what has not been sent.
    """

    def __init__(
        self,
        handler: Callable[[list[V]], Awaitable[Any]],
        delay: float,
        *,
        merge: Callable[[V, V], V] | None = None,
        name: str = "queue",
    ) -> None:
        self._handler = handler
        self.delay = delay
        self._merge = merge
        self.name = name
        self._items: dict[K, V] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._in_flight = False
        self._paused = False
        self._deferred = False
        self._idle = asyncio.Event()
        self._idle.set()

    # ============================================================
    # STATE
    # ============================================================

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def get(self, key: K) -> V | None:
        return self._items.get(key)

    def pending(self) -> list[V]:
        return list(self._items.values())

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    # ============================================================
    # QUEUE
    # ============================================================

    def put(self, key: K, item: V) -> V:
        existing = self._items.get(key)
        if existing is not None and self._merge is not None:
            item = self._merge(existing, item)
        self._items[key] = item
        self._arm()
        return item

    def requeue(self, key: K, item: V, *, delay: float | None = None) -> V:
        """
        Put back an item whose flush failed. A newer item already queued
        under the same key keeps its value and absorbs the older one.
        """
        queued = self._items.get(key)
        if queued is not None:
            item = self._merge(item, queued) if self._merge is not None else queued
        self._items[key] = item
        self._arm(delay)
        return item

    def discard(self, key: K) -> V | None:
        return self._items.pop(key, None)

    def _arm(self, delay: float | None = None) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay if delay is None else delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._paused or self._in_flight:
            self._deferred = True
            return
        if not self._items:
            return
        self._task = asyncio.get_running_loop().create_task(self.flush())

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._deferred or (self._items and self._timer is None):
            self._deferred = False
            if self._items:
                self._arm()

    # ============================================================
    # FLUSH
    # ============================================================

    async def flush(self, *, force: bool = False) -> bool:
        """
        Hand every queued item to the handler. Returns ``False`` when
        nothing was sent (empty, paused, or another flush in flight).
        """
        if self._in_flight or not self._items:
            return False
        if self._paused and not force:
            self._deferred = True
            return False

        self._cancel_timer()
        batch = list(self._items.values())
        self._items.clear()
        self._in_flight = True
        self._idle.clear()
        try:
            await self._handler(batch)
        finally:
            self._in_flight = False
            self._idle.set()
            # A requeue inside the handler may already have armed a backoff.
            if self._items and self._timer is None:
                self._deferred = False
                if not self._paused:
                    self._arm()
        return True

    async def drain(self, *, force: bool = False) -> None:
        """
        Wait for an in-flight flush, then flush whatever is left. With
        ``force`` a paused queue is flushed too.
        """
        while True:
            await self._idle.wait()
            if not self._items or (self._paused and not force):
                return
            await self.flush(force=force)

    def cancel(self) -> list[V]:
        """
        Stop the timer and drop unsent items. A flush already handed to the
        handler is left to finish.
        """
        self._cancel_timer()
        dropped = list(self._items.values())
        self._items.clear()
        self._deferred = False
        if dropped:
            logger.info(
                "Dropped queued items",
                extra={"extra_fields": {"queue": self.name, "count": len(dropped)}},
            )
        return dropped
