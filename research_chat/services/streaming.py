from __future__ import annotations

import time
from typing import Any

from research_chat.models.events import EventType, NormalizedEvent

TIMEOUT_MESSAGE = "Processing exceeded time limit; partial results above."


def meta(stage: str | None = None, **kwargs: Any) -> NormalizedEvent:
    data: dict[str, Any] = {}
    if stage:
        data["stage"] = stage
    data.update({k: v for k, v in kwargs.items() if v is not None})
    return NormalizedEvent(type=EventType.META, data=data)


def acknowledgment(content: str, stage: str | None = None) -> NormalizedEvent:
    return NormalizedEvent(type=EventType.ACKNOWLEDGMENT, data={"content": content}, stage=stage)


def reasoning_progress(content: str, stage: str | None = None) -> NormalizedEvent:
    return NormalizedEvent(
        type=EventType.REASONING_PROGRESS, data={"content": content}, stage=stage
    )


def reasoning(content: str, stage: str | None = None) -> NormalizedEvent:
    return NormalizedEvent(type=EventType.REASONING, data={"content": content}, stage=stage)


def content(text: str, stage: str | None = None) -> NormalizedEvent:
    return NormalizedEvent(type=EventType.CONTENT, data={"content": text}, stage=stage)


def web_search(query: str, sources: list[str]) -> NormalizedEvent:
    return NormalizedEvent(
        type=EventType.WEB_SEARCH, data={"query": query, "sources": list(sources)}
    )


def tool_output(
    call_id: str | None,
    name: str,
    *,
    ok: bool,
    output: Any = None,
    error: str | None = None,
) -> NormalizedEvent:
    data: dict[str, Any] = {"call_id": call_id, "name": name, "ok": ok}
    if output is not None:
        data["output"] = output
    if error:
        data["error"] = error
    return NormalizedEvent(type=EventType.TOOL_OUTPUT, data=data)


def accounts_added(count: int, companies: list[str]) -> NormalizedEvent:
    return NormalizedEvent(
        type=EventType.ACCOUNTS_ADDED, data={"count": count, "companies": list(companies)}
    )


def ping(ts: int | None = None) -> NormalizedEvent:
    return NormalizedEvent(
        type=EventType.PING, data={"ts": ts if ts is not None else int(time.time() * 1000)}
    )


def done(response_id: str | None = None) -> NormalizedEvent:
    return NormalizedEvent(type=EventType.DONE, data={"response_id": response_id})


def timeout(message: str = TIMEOUT_MESSAGE) -> NormalizedEvent:
    return NormalizedEvent(type=EventType.TIMEOUT, data={"message": message})


def error(message: str) -> NormalizedEvent:
    return NormalizedEvent(type=EventType.ERROR, data={"error": message})
