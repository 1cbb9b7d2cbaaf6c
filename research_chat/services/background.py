from __future__ import annotations

import asyncio
from typing import Coroutine

from research_chat.services.logger import logger


class BackgroundTaskRunner:
    """Holds references to fire-and-forget tasks and logs their failures.

    Tasks spawned here are not tied to any request's cancellation token.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Background task {task.get_name()} failed")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for running tasks, including ones they spawn while draining."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning(f"{len(self._tasks)} background task(s) still running after drain")
                return
            await asyncio.wait(set(self._tasks), timeout=remaining)
            # Let done callbacks discard finished tasks.
            await asyncio.sleep(0)
