from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional, Set

from tasklane.logging import get_logger

logger = get_logger(__name__)


class BackgroundSupervisor:
    """Registry for fire-and-forget work that must outlive its request.

    Spawned coroutines run as loop tasks that are not tied to any request
    scope. The registry keeps a strong reference to each task until it
    finishes, logs failures instead of raising them, and lets the
    application drain outstanding work before shutdown.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str = "background") -> asyncio.Task:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning("background_task_cancelled", task=name)
            raise
        except Exception as exc:
            logger.exception("background_task_failed", task=name, error=str(exc))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding work; cancel whatever is left after ``timeout``."""

        current = asyncio.current_task()
        pending = [
            task
            for task in self._tasks
            if task is not current and task.get_loop() is asyncio.get_running_loop()
        ]
        if not pending:
            return
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("background_drain_timeout", cancelled=len(not_done))
            await asyncio.gather(*not_done, return_exceptions=True)
