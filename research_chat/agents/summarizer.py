from __future__ import annotations

from research_chat.llm_client import GenerationRequest
from research_chat.models.session import ReasoningEffort, SubscriptionRole
from research_chat.services.prompt_store import render_prompt

MAX_SOURCE_CHARS = 24000


def build_summarization_request(
    *, model: str, source: str, request_text: str, chat_id: str | None = None
) -> GenerationRequest:
    """Request for the summarize-only path; bypasses research entirely."""
    return GenerationRequest(
        role=SubscriptionRole.SUMMARIZATION,
        model=model,
        instructions=render_prompt("summarization.instructions"),
        input=render_prompt(
            "summarization.input",
            source=source[:MAX_SOURCE_CHARS],
            request=request_text or "Summarize the key points.",
        ),
        reasoning_effort=ReasoningEffort.LOW,
        metadata={"chat_id": chat_id},
    )
