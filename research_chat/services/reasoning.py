from __future__ import annotations

import re
import time
from typing import Callable


def compact_reasoning(text: str, tail_chars: int) -> str:
    """Collapse whitespace and keep only the trailing ``tail_chars``."""
    collapsed = re.sub(r"\s+", " ", text).strip()
    if len(collapsed) <= tail_chars:
        return collapsed
    return "…" + collapsed[-tail_chars:].lstrip()


class ReasoningCoalescer:
    """Buffers reasoning deltas and releases one compacted chunk per interval."""

    def __init__(
        self,
        *,
        flush_seconds: float = 0.8,
        tail_chars: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.flush_seconds = flush_seconds
        self.tail_chars = tail_chars
        self._clock = clock
        self._buffer = ""
        self._last_flush = clock()

    def add(self, text: str) -> str | None:
        self._buffer += text
        if self._clock() - self._last_flush >= self.flush_seconds:
            return self.flush()
        return None

    def flush(self) -> str | None:
        self._last_flush = self._clock()
        if not self._buffer.strip():
            self._buffer = ""
            return None
        compact = compact_reasoning(self._buffer, self.tail_chars)
        self._buffer = ""
        return compact
