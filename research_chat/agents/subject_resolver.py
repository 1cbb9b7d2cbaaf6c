from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

from research_chat.llm_client import GenerationRequest, ResponsesProvider
from research_chat.models.session import ReasoningEffort, SubscriptionRole
from research_chat.services import logger as log_service
from research_chat.services.deadline import CancellationToken
from research_chat.services.prompt_store import render_prompt


@dataclass
class ResolvedSubject:
    name: str
    industry: str | None = None
    website: str | None = None
    confidence: float | None = None
    alternates: list[str] = field(default_factory=list)

    def as_hint(self) -> dict[str, Any]:
        return {"name": self.name, "industry": self.industry, "website": self.website}


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def parse_resolution(raw_text: str) -> ResolvedSubject | None:
    payload = extract_json_object(raw_text)
    top = payload.get("top")
    if not isinstance(top, dict) or not str(top.get("name") or "").strip():
        return None
    confidence = top.get("confidence")
    alternates = [
        str(a.get("name")).strip()
        for a in payload.get("alternates") or []
        if isinstance(a, dict) and a.get("name")
    ]
    return ResolvedSubject(
        name=str(top["name"]).strip(),
        industry=top.get("industry") or None,
        website=top.get("website") or None,
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
        alternates=alternates[:3],
    )


class SubjectResolver:
    """One-shot lookup of which company a short mention most likely refers to."""

    def __init__(self, provider: ResponsesProvider, *, model: str, timeout_seconds: float = 15.0):
        self._provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds

    def build_request(self, subject: str, context_summary: str) -> GenerationRequest:
        return GenerationRequest(
            role=SubscriptionRole.SUBJECT_RESOLUTION,
            model=self.model,
            instructions=render_prompt("subject_resolution.instructions"),
            input=render_prompt(
                "subject_resolution.input",
                subject=subject,
                context=context_summary or "none",
            ),
            reasoning_effort=ReasoningEffort.LOW,
            max_output_tokens=400,
        )

    async def resolve(
        self, subject: str, context_summary: str, token: CancellationToken
    ) -> ResolvedSubject | None:
        """Returns None on any failure; resolution never blocks the answer."""
        started = time.monotonic()
        request = self.build_request(subject, context_summary)
        status, error = "success", None
        try:
            raw = await asyncio.wait_for(
                token.race(self._provider.complete(request)), self.timeout_seconds
            )
            return parse_resolution(raw)
        except Exception as e:
            status, error = "failed", str(e) or type(e).__name__
            return None
        finally:
            log_service.log_llm_call(
                model=self.model,
                caller=SubscriptionRole.SUBJECT_RESOLUTION.value,
                duration_ms=int((time.monotonic() - started) * 1000),
                status=status,
                error=error,
            )
