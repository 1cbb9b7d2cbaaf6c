from __future__ import annotations

import asyncio
from typing import AsyncIterator, Protocol

from research_chat.models.events import DONE_SENTINEL, NormalizedEvent
from research_chat.services.logger import logger


class OutboundChannel(Protocol):
    """Transport the emitter writes serialized payloads to."""

    async def send(self, data: str) -> None: ...

    async def close(self) -> None: ...


_CLOSED = object()


class QueueChannel:
    """In-process channel drained by a hosting adapter.

    Payloads are the JSON bodies of each record (or the ``[DONE]`` sentinel);
    framing is left to the adapter.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    async def send(self, data: str) -> None:
        if self._closed:
            return
        self._queue.put_nowait(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


class NormalizedEventEmitter:
    """Single guarded writer in front of the outbound channel.

    Writes after a terminal event, after ``close()`` or after the client went
    away are dropped silently.
    """

    def __init__(self, channel: OutboundChannel, *, session_id: str = ""):
        self._channel = channel
        self._session_id = session_id
        self._lock = asyncio.Lock()
        self._terminated = False
        self._closed = False
        self.sent: list[NormalizedEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminated(self) -> bool:
        return self._terminated or self._closed

    async def emit(self, event: NormalizedEvent) -> bool:
        async with self._lock:
            if self._closed or self._terminated:
                return False
            if event.is_terminal:
                self._terminated = True
            try:
                await self._channel.send(event.to_json())
            except Exception as e:
                self._closed = True
                logger.warning(
                    f"Outbound write failed for session {self._session_id}: {e}"
                )
                return False
            self.sent.append(event)
            return True

    async def close(self) -> None:
        """Write the ``[DONE]`` sentinel once and close the channel."""
        async with self._lock:
            if self._closed:
                return
            self._terminated = True
            self._closed = True
            try:
                await self._channel.send(DONE_SENTINEL)
            except Exception as e:
                logger.warning(
                    f"Failed to write sentinel for session {self._session_id}: {e}"
                )
            await self._channel.close()

    def mark_disconnected(self) -> None:
        """Client went away; every later write becomes a no-op."""
        self._closed = True
        self._terminated = True
