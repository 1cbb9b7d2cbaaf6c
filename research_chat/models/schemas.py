from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# --- Requests ---


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = ""


class ChatConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fast_mode: bool = False
    model: str | None = None
    clarifiers_locked: bool = False
    facet_budget: float | None = None
    summarize_source: str | None = None
    disambiguate_subject: bool = False
    disable_fast_plan: bool = False


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(default_factory=list)
    mode: Literal["quick", "deep", "specific"] | None = None
    chat_id: str | None = Field(default=None, alias="chatId")
    config: ChatConfig = Field(default_factory=ChatConfig)
    active_subject: str | None = None

    @property
    def last_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content or ""
        return ""

    @property
    def active_subject_clean(self) -> str:
        return (self.active_subject or "").strip()


# --- Responses ---


class ErrorResponse(BaseModel):
    error: str
    needs_approval: bool | None = Field(default=None, serialization_alias="needsApproval")
    remaining: int | None = None


class HealthResponse(BaseModel):
    status: str
    service: str
    details: dict[str, Any] = Field(default_factory=dict)
