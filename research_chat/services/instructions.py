"""Instruction text and provider input for one chat turn."""
from __future__ import annotations

import re
from typing import Any, Protocol, Sequence

from research_chat.models.schemas import ChatConfig, ChatMessage
from research_chat.models.session import ResearchMode, UserContext
from research_chat.services.prompt_store import render_prompt

FOLLOW_UP_PATTERN = re.compile(
    r"\b(they|them|their|theirs|it|its|this company|that company|the company)\b"
    r"|^\s*(and|also|what about|how about|any|more)\b",
    re.IGNORECASE,
)


class InstructionBuilder(Protocol):
    def build(self, user_context: UserContext, mode: ResearchMode, config: ChatConfig) -> str: ...


class DefaultInstructionBuilder:
    """Builds instructions from the prompt catalog and the saved profile."""

    def build(self, user_context: UserContext, mode: ResearchMode, config: ChatConfig) -> str:
        if mode == ResearchMode.NONE:
            return render_prompt("instructions.general")

        parts = [render_prompt("instructions.research", mode=mode.value)]
        profile = user_context.plan_summary()
        if profile:
            parts.append(render_prompt("instructions.profile", profile=profile))

        disqualifiers = _names(user_context.disqualifiers, "criterion", "name")
        if disqualifiers:
            parts.append(render_prompt("instructions.disqualifiers", items="; ".join(disqualifiers)))

        preferences = _names(user_context.report_preferences, "preference", "value", "name")
        if preferences:
            parts.append(
                render_prompt("instructions.report_preferences", items="; ".join(preferences))
            )

        guardrail = (user_context.prompt_config or {}).get("guardrail_profile")
        if guardrail:
            parts.append(render_prompt("instructions.guardrails", profile=guardrail))
        return "\n\n".join(parts)


def _names(rows: Sequence[dict[str, Any]], *keys: str) -> list[str]:
    names: list[str] = []
    for row in rows:
        for key in keys:
            if row.get(key):
                names.append(str(row[key]))
                break
    return names


def subject_details(industry: str | None, website: str | None) -> str:
    extras = [x for x in (industry, website) if x]
    return f" ({', '.join(extras)})" if extras else ""


def with_hints(
    instructions: str,
    *,
    config: ChatConfig,
    tools_enabled: bool,
    tracking_requested: bool = False,
    subject_snapshot: tuple[str, str] | None = None,
    resolved_subject: dict[str, Any] | None = None,
) -> str:
    """Append per-request hints to the base instructions."""
    hints: list[str] = []
    if not tools_enabled:
        hints.append(render_prompt("hints.tool_policy_off"))
    elif tracking_requested:
        hints.append(render_prompt("hints.tool_policy_tracking"))
    if config.clarifiers_locked:
        hints.append(render_prompt("hints.clarifiers_locked"))
    if config.facet_budget:
        hints.append(render_prompt("hints.facet_budget", budget=f"{config.facet_budget:g}"))
    if config.fast_mode:
        hints.append(render_prompt("hints.fast_mode"))
    if subject_snapshot and subject_snapshot[1]:
        subject, snapshot = subject_snapshot
        hints.append(render_prompt("hints.subject_snapshot", subject=subject, snapshot=snapshot))
    if resolved_subject and resolved_subject.get("name"):
        hints.append(
            render_prompt(
                "hints.subject_bias",
                name=resolved_subject["name"],
                details=subject_details(
                    resolved_subject.get("industry"), resolved_subject.get("website")
                ),
            )
        )
    if not hints:
        return instructions
    return "\n\n".join([instructions, *hints])


def effective_request(message: str, active_subject: str | None) -> str:
    """Attach the subject in focus to follow-ups that only refer to it."""
    subject = (active_subject or "").strip()
    if not subject or subject.lower() in message.lower():
        return message
    if FOLLOW_UP_PATTERN.search(message):
        return render_prompt("requests.follow_up_context", request=message, subject=subject)
    return message


def recent_context(messages: Sequence[ChatMessage], turns: int) -> str:
    lines = []
    for message in list(messages)[-turns:] if turns > 0 else []:
        role = {"user": "User", "assistant": "Assistant"}.get(message.role, "System")
        text = re.sub(r"\s+", " ", message.content or "").strip()
        lines.append(f"{role}: {text}")
    return "\n".join(lines)


def build_primary_input(
    messages: Sequence[ChatMessage],
    request_text: str,
    *,
    is_research: bool,
    turns: int,
) -> str:
    if not is_research:
        return request_text
    return render_prompt(
        "requests.research_task",
        recent=recent_context(messages, turns) or "(none)",
        request=request_text,
    )
