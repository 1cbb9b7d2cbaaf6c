from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from research_chat.errors import UnknownToolError
from research_chat.models.events import NormalizedEvent

WEB_SEARCH_TOOL = {"type": "web_search"}


@dataclass
class ToolContext:
    user_id: str
    authorization: str = ""
    session_id: str = ""


@dataclass
class ToolResult:
    output: Any = None
    events: list[NormalizedEvent] = field(default_factory=list)
    confirmation: str = ""


ToolExecutor = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    definition: dict[str, Any]
    executor: ToolExecutor


class ToolRegistry:
    """Function tools offered to the provider, keyed by name."""

    def __init__(self, specs: Iterable[ToolSpec] = ()):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        self._specs[spec.name] = spec

    def resolve(self, name: str | None) -> ToolSpec:
        """Look up ``name``; an unnamed call falls back to the only registered tool."""
        if name:
            spec = self._specs.get(name)
            if spec is None:
                raise UnknownToolError(name)
            return spec
        if len(self._specs) == 1:
            return next(iter(self._specs.values()))
        raise UnknownToolError("")

    def provider_tools(self) -> list[dict[str, Any]]:
        """Function tools plus the provider's built-in web search."""
        return [spec.definition for spec in self._specs.values()] + [dict(WEB_SEARCH_TOOL)]
