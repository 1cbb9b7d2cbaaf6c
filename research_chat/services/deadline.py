from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from research_chat.errors import UpstreamCancelled
from research_chat.models.session import RequestSession
from research_chat.services import logger as log_service

T = TypeVar("T")

DEADLINE = "deadline"
CLIENT_DISCONNECT = "client_disconnect"


class Abortable(Protocol):
    def abort(self) -> None: ...

    async def close(self) -> None: ...


class CancellationToken:
    """Shared, idempotent cancellation signal for one request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str) -> bool:
        """Signal cancellation. Returns False when already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        for callback in list(self._callbacks):
            callback(reason)
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises UpstreamCancelled when cancellation wins; the losing awaitable
        is cancelled and reaped before returning.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise UpstreamCancelled(self.reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            finished = task.done()
            if not finished:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if not finished:
            raise UpstreamCancelled(self.reason)
        return task.result()


class DeadlineController:
    """One wall-clock timer per session fanning cancellation out to every
    registered upstream subscription."""

    def __init__(
        self,
        session: RequestSession,
        *,
        timeout_seconds: float,
        ceiling_seconds: float | None = None,
        grace_seconds: float = 2.0,
    ):
        duration = float(timeout_seconds)
        if ceiling_seconds is not None:
            duration = min(duration, float(ceiling_seconds))
        self.session = session
        self.duration_seconds = max(duration, 0.0)
        self.grace_seconds = grace_seconds
        self.token = CancellationToken()
        self._subscriptions: set[Any] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def open_subscriptions(self) -> int:
        return len(self._subscriptions)

    def start(self) -> None:
        if self._timer is not None or self._finished:
            return
        loop = asyncio.get_running_loop()
        self.session.deadline_at = time.time() + self.duration_seconds
        self._timer = loop.call_later(self.duration_seconds, self._expire)

    def _expire(self) -> None:
        self._timer = None
        log_service.log_event(
            event_type="deadline_expired",
            message="Session deadline reached; cancelling upstream work",
            session_id=self.session.session_id,
            deadline_seconds=self.duration_seconds,
            open_subscriptions=len(self._subscriptions),
        )
        self.cancel(DEADLINE)

    def cancel(self, reason: str) -> bool:
        """Cancel every open subscription. Safe to call more than once."""
        if self._finished:
            return False
        if not self.token.cancel(reason):
            return False
        self.session.cancelled = True
        self.session.cancel_reason = reason
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for subscription in list(self._subscriptions):
            subscription.abort()
        return True

    def register(self, subscription: Abortable) -> None:
        self._subscriptions.add(subscription)
        if self.token.cancelled:
            subscription.abort()

    def unregister(self, subscription: Abortable) -> None:
        self._subscriptions.discard(subscription)

    def stop(self) -> None:
        """Disarm the timer once the session has finished."""
        self._finished = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def drain(self) -> None:
        """Close whatever is still open, bounded by the grace period."""
        pending = list(self._subscriptions)
        if not pending:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(s.close() for s in pending), return_exceptions=True),
                timeout=self.grace_seconds,
            )
        except asyncio.TimeoutError:
            log_service.logger.warning(
                f"{len(pending)} upstream subscription(s) did not close within "
                f"{self.grace_seconds}s for session {self.session.session_id}"
            )
