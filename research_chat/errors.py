from __future__ import annotations


class UpstreamCancelled(Exception):
    """An upstream subscription was cut by the shared cancellation token."""

    def __init__(self, reason: str | None = None):
        self.reason = reason or "cancelled"
        super().__init__(f"Upstream cancelled: {self.reason}")

    @property
    def is_deadline(self) -> bool:
        return self.reason == "deadline"


class UpstreamConnectError(Exception):
    """The provider could not be reached before any bytes were streamed."""


class UpstreamIncomplete(Exception):
    """The provider stream ended without a completion signal."""


class ToolExecutionError(Exception):
    pass


class UnknownToolError(ToolExecutionError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name or '<unnamed>'}")
