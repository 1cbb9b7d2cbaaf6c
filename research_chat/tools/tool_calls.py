"""Reassembles streamed function-call arguments and runs the tool once they are complete."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from research_chat.errors import UnknownToolError
from research_chat.models.events import NormalizedEvent
from research_chat.services import logger as log_service
from research_chat.services import streaming
from research_chat.tools.registry import ToolContext, ToolRegistry

ANONYMOUS_CALL = "_anonymous"


class ToolCallState(str, Enum):
    ACCUMULATING = "accumulating"
    COMPLETE = "complete"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class ToolCallBuffer:
    call_id: str
    name: str = ""
    args_text: str = ""
    state: ToolCallState = ToolCallState.ACCUMULATING


@dataclass
class ToolOutcome:
    events: list[NormalizedEvent] = field(default_factory=list)
    confirmation: str = ""


class ToolCallAccumulator:
    """Per-call-id state machine: accumulating -> complete -> executed | failed."""

    def __init__(
        self,
        registry: ToolRegistry,
        context: ToolContext,
        *,
        timeout_seconds: float = 30.0,
        max_sources: int = 5,
    ):
        self._registry = registry
        self._context = context
        self._timeout = timeout_seconds
        self._max_sources = max_sources
        self._buffers: dict[str, ToolCallBuffer] = {}

    @property
    def buffers(self) -> dict[str, ToolCallBuffer]:
        return self._buffers

    def _buffer(self, call_id: str | None) -> ToolCallBuffer:
        key = call_id or ANONYMOUS_CALL
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = self._buffers[key] = ToolCallBuffer(call_id=key)
        return buffer

    def start(self, call_id: str | None, name: str = "") -> None:
        buffer = self._buffer(call_id)
        if name and not buffer.name:
            buffer.name = name

    def append(self, call_id: str | None, *, name: str = "", arguments: str = "") -> None:
        buffer = self._buffer(call_id)
        if buffer.state != ToolCallState.ACCUMULATING:
            return
        buffer.name += name
        buffer.args_text += arguments

    async def complete(
        self, call_id: str | None, *, name: str = "", arguments: str | None = None
    ) -> ToolOutcome:
        buffer = self._buffer(call_id)
        if buffer.state != ToolCallState.ACCUMULATING:
            return ToolOutcome()
        buffer.state = ToolCallState.COMPLETE
        if name and not buffer.name:
            buffer.name = name
        raw = buffer.args_text or arguments or "{}"

        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("arguments must be a JSON object")
        except ValueError as e:
            return self._fail(buffer, f"Bad tool args: {e}")

        if "web_search" in buffer.name.lower():
            buffer.state = ToolCallState.EXECUTED
            sources = parsed.get("sources") or []
            return ToolOutcome(
                events=[
                    streaming.web_search(
                        str(parsed.get("query") or ""),
                        [str(s) for s in sources][: self._max_sources],
                    )
                ]
            )

        try:
            spec = self._registry.resolve(buffer.name)
        except UnknownToolError as e:
            return self._fail(buffer, str(e))
        buffer.name = spec.name

        try:
            result = await asyncio.wait_for(spec.executor(parsed, self._context), self._timeout)
        except asyncio.TimeoutError:
            return self._fail(buffer, f"{spec.name} timed out after {self._timeout:g}s")
        except Exception as e:
            return self._fail(buffer, f"{spec.name} failed: {e}")

        buffer.state = ToolCallState.EXECUTED
        log_service.log_event(
            event_type="tool_executed",
            message=f"Tool {spec.name} executed",
            session_id=self._context.session_id,
            call_id=buffer.call_id,
        )
        return ToolOutcome(events=list(result.events), confirmation=result.confirmation)

    def _fail(self, buffer: ToolCallBuffer, message: str) -> ToolOutcome:
        buffer.state = ToolCallState.FAILED
        log_service.log_event(
            event_type="tool_failed",
            message=message,
            session_id=self._context.session_id,
            call_id=buffer.call_id,
            tool=buffer.name,
            raw_args=buffer.args_text[:500],
        )
        return ToolOutcome(
            events=[
                streaming.tool_output(
                    buffer.call_id, buffer.name, ok=False, error=message
                )
            ]
        )

    def reset(self) -> None:
        self._buffers.clear()

    def snapshot(self) -> dict[str, Any]:
        return {k: b.state.value for k, b in self._buffers.items()}
