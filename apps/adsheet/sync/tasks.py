from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from shared.logger import get_logger

logger = get_logger("AdSheet Sync")


class TaskTracker:
    """
    Owns the background tasks a grid session starts from synchronous hooks,
    so they can be awaited on shutdown and their failures get logged.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background sync task failed",
                exc_info=exc,
                extra={
                    "extra_fields": {
                        "task": task.get_name(),
                        "error": str(exc),
                    }
                },
            )

    async def settle(self) -> None:
        """
        Wait until no task is left, including tasks spawned while waiting.
        """
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
