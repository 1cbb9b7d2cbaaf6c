from __future__ import annotations

import asyncio

from research_chat.services import streaming
from research_chat.services.emitter import NormalizedEventEmitter


def next_delay(current: float, factor: float, cap: float) -> float:
    return min(cap, current * factor)


class KeepAliveScheduler:
    """Emits ``ping`` events while the session is still silent.

    Stopped for good on the first ``content`` event; ``start`` after ``stop``
    is a no-op.
    """

    def __init__(
        self,
        emitter: NormalizedEventEmitter,
        *,
        initial_seconds: float = 2.0,
        backoff_factor: float = 2.0,
        max_seconds: float = 10.0,
    ):
        self._emitter = emitter
        self.initial_seconds = initial_seconds
        self.backoff_factor = backoff_factor
        self.max_seconds = max_seconds
        self._task: asyncio.Task | None = None
        self._stopped = False
        self.pings_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._stopped or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="keepalive")

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        delay = self.initial_seconds
        while not self._stopped:
            await asyncio.sleep(delay)
            if self._stopped or self._emitter.terminated:
                return
            if await self._emitter.emit(streaming.ping()):
                self.pings_sent += 1
            delay = next_delay(delay, self.backoff_factor, self.max_seconds)
