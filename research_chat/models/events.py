from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DONE_SENTINEL = "[DONE]"


class EventType(str, Enum):
    META = "meta"
    ACKNOWLEDGMENT = "acknowledgment"
    REASONING_PROGRESS = "reasoning_progress"
    REASONING = "reasoning"
    CONTENT = "content"
    WEB_SEARCH = "web_search"
    TOOL_OUTPUT = "tool_output"
    ACCOUNTS_ADDED = "accounts_added"
    TIMEOUT = "timeout"
    ERROR = "error"
    PING = "ping"
    DONE = "done"


TERMINAL_EVENTS = frozenset({EventType.DONE, EventType.ERROR, EventType.TIMEOUT})


@dataclass(frozen=True)
class NormalizedEvent:
    """The only event shape written to the client."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    stage: str | None = None

    def __post_init__(self) -> None:
        # Detach from the caller's dict so later mutation cannot leak in.
        object.__setattr__(self, "data", dict(self.data))

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {"type": self.type.value, **self.data}
        if self.stage:
            body.setdefault("stage", self.stage)
        return body

    def to_json(self) -> str:
        return json.dumps(self.payload(), ensure_ascii=False)

    def format(self) -> str:
        return f"data: {self.to_json()}\n\n"


class ProviderEventKind(str, Enum):
    RESPONSE_CREATED = "response_created"
    REASONING_DELTA = "reasoning_delta"
    OUTPUT_TEXT_DELTA = "output_text_delta"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_ARGS_DELTA = "tool_args_delta"
    TOOL_CALL_DONE = "tool_call_done"
    WEB_SEARCH = "web_search"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderEvent:
    """Canonical provider event produced at the ingestion boundary.

    Only the fields relevant to ``kind`` are populated.
    """

    kind: ProviderEventKind
    text: str = ""
    response_id: str | None = None
    call_id: str | None = None
    name: str = ""
    arguments: str | None = None
    query: str = ""
    sources: tuple[str, ...] = ()
    usage_tokens: int | None = None
    error: str | None = None
    raw_type: str = ""
