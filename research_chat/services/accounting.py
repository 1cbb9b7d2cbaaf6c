"""Post-session usage accounting: usage row, credit deduction, rolling summary."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from research_chat.llm_client import GenerationRequest, ResponsesProvider
from research_chat.models.schemas import ChatMessage
from research_chat.models.session import CreditStatus, ReasoningEffort, SubscriptionRole
from research_chat.services import logger as log_service
from research_chat.services.instructions import recent_context
from research_chat.services.prompt_store import render_prompt


class UsageLedger(Protocol):
    async def check_credits(self, user_id: str) -> CreditStatus: ...

    async def log_usage(
        self, user_id: str, action_type: str, tokens: int, metadata: dict[str, Any] | None = None
    ) -> None: ...

    async def deduct_credits(self, user_id: str, tokens: int) -> None: ...

    async def update_chat_summary(self, chat_id: str, summary: str, message_count: int) -> None: ...


def estimate_tokens(messages: Sequence[ChatMessage]) -> int:
    """Rough token count: four characters per token of the serialized history."""
    serialized = json.dumps([m.model_dump() for m in messages], ensure_ascii=False)
    return math.ceil(len(serialized) / 4)


@dataclass
class UsageRecord:
    user_id: str
    model: str
    messages: list[ChatMessage]
    answer: str = ""
    chat_id: str | None = None
    mode: str = "none"
    response_id: str | None = None
    usage_tokens: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tokens(self) -> int:
        if self.usage_tokens:
            return self.usage_tokens
        return estimate_tokens(self.messages)


class UsageAccountant:
    def __init__(
        self,
        ledger: UsageLedger,
        provider: ResponsesProvider,
        *,
        summary_model: str,
        rolling_summary_enabled: bool = True,
    ):
        self._ledger = ledger
        self._provider = provider
        self._summary_model = summary_model
        self._rolling_summary_enabled = rolling_summary_enabled

    async def record(self, usage: UsageRecord) -> None:
        tokens = usage.tokens
        metadata = {
            "chat_id": usage.chat_id,
            "model": usage.model,
            "mode": usage.mode,
            "api": "responses",
            "final_response_id": usage.response_id,
            "estimated": not usage.usage_tokens,
            **usage.metadata,
        }
        try:
            await self._ledger.log_usage(usage.user_id, "chat_completion", tokens, metadata)
        except Exception as e:
            log_service.logger.error(f"Failed to log usage for {usage.user_id}: {e}")
        try:
            await self._ledger.deduct_credits(usage.user_id, tokens)
        except Exception as e:
            log_service.logger.error(f"Failed to deduct credits for {usage.user_id}: {e}")

        if usage.chat_id and self._rolling_summary_enabled:
            await self._update_summary(usage)

        log_service.log_event(
            event_type="usage_recorded",
            message="Session usage recorded",
            user_id=usage.user_id,
            tokens=tokens,
            chat_id=usage.chat_id,
        )

    async def _update_summary(self, usage: UsageRecord) -> None:
        transcript = recent_context(
            [*usage.messages, ChatMessage(role="assistant", content=usage.answer)], turns=8
        )
        request = GenerationRequest(
            role=SubscriptionRole.SUMMARIZATION,
            model=self._summary_model,
            instructions=render_prompt("rolling_summary.instructions"),
            input=render_prompt("rolling_summary.input", transcript=transcript),
            reasoning_effort=ReasoningEffort.LOW,
            metadata={"purpose": "rolling_summary", "chat_id": usage.chat_id},
        )
        try:
            summary = (await self._provider.complete(request)).strip()
            if summary:
                await self._ledger.update_chat_summary(
                    usage.chat_id, summary, len(usage.messages) + 1
                )
        except Exception as e:
            log_service.logger.warning(f"Rolling summary failed for chat {usage.chat_id}: {e}")
