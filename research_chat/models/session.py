from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResearchMode(str, Enum):
    QUICK = "quick"
    DEEP = "deep"
    SPECIFIC = "specific"
    AUTO = "auto"
    NONE = "none"


class ReasoningEffort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SubscriptionRole(str, Enum):
    PRIMARY = "primary"
    FAST_PLAN = "fast_plan"
    SUBJECT_RESOLUTION = "subject_resolution"
    SUMMARIZATION = "summarization"


@dataclass
class RequestSession:
    """State for one client exchange.

    Mutated only by the orchestrator and the deadline controller.
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.time)
    deadline_at: float | None = None
    cancelled: bool = False
    cancel_reason: str | None = None
    mode: ResearchMode = ResearchMode.NONE
    tools_enabled: bool = False
    model: str = ""
    reasoning_effort: ReasoningEffort = ReasoningEffort.LOW
    fast_mode: bool = False
    chat_id: str | None = None
    user_id: str | None = None

    def elapsed_ms(self, now: float | None = None) -> int:
        return int(((now if now is not None else time.time()) - self.started_at) * 1000)


@dataclass
class UserContext:
    profile: dict[str, Any] | None = None
    custom_criteria: list[dict[str, Any]] = field(default_factory=list)
    signals: list[dict[str, Any]] = field(default_factory=list)
    disqualifiers: list[dict[str, Any]] = field(default_factory=list)
    prompt_config: dict[str, Any] | None = None
    report_preferences: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_rpc(cls, payload: dict[str, Any] | None) -> "UserContext":
        ctx = payload or {}
        return cls(
            profile=ctx.get("profile") or None,
            custom_criteria=ctx.get("custom_criteria") or [],
            signals=ctx.get("signals") or [],
            disqualifiers=ctx.get("disqualifiers") or [],
            prompt_config=ctx.get("prompt_config") or None,
            report_preferences=ctx.get("report_preferences") or [],
        )

    def plan_summary(self) -> str:
        """Short profile digest used by the plan and preview lines."""
        bits: list[str] = []
        profile = self.profile or {}
        if profile.get("company_name"):
            bits.append(f"Your org: {profile['company_name']}")
        if profile.get("industry"):
            bits.append(f"Industry: {profile['industry']}")
        titles = profile.get("target_titles")
        if isinstance(titles, list) and titles:
            bits.append(f"Target titles: {', '.join(str(t) for t in titles[:4])}")
        if self.custom_criteria:
            criteria: list[str] = []
            for item in self.custom_criteria[:4]:
                label = str(item.get("field_name", ""))
                if item.get("importance"):
                    label = f"{label} ({item['importance']})"
                criteria.append(label)
            bits.append(f"Custom criteria: {', '.join(criteria)}")
        signal_names = [
            s.get("signal_type") or s.get("type") for s in self.signals[:3]
        ]
        signal_names = [s for s in signal_names if s]
        if signal_names:
            bits.append(f"Monitored signals: {', '.join(signal_names)}")
        return "\n".join(bits)


@dataclass
class CreditStatus:
    has_credits: bool
    remaining: int = 0
    needs_approval: bool = False
    message: str | None = None


@dataclass
class AuthenticatedUser:
    id: str
    email: str | None = None
    authorization: str = ""
