"""Rule-based research intent classification."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from research_chat.models.session import ReasoningEffort, ResearchMode
from research_chat.services.logger import logger

NON_RESEARCH_TERMS = frozenset(
    {
        "hi",
        "hello",
        "hey",
        "thanks",
        "thank you",
        "ok",
        "okay",
        "agenda",
        "notes",
        "help",
        "update",
        "updates",
        "plan",
        "planning",
        "what",
        "who",
        "why",
        "how",
        "where",
        "when",
        "test",
    }
)

RESEARCH_VERBS = re.compile(
    r"(research|analy[sz]e|investigate|look\s*up|deep\s*dive|latest\s+news|competitive|"
    r"funding|hiring|tech(?:\s|-)?stack|security|signals?|tell me about|what is|who is)",
    re.IGNORECASE,
)
COMPANY_INDICATORS = re.compile(r"(inc\.|corp\.|ltd\.|llc|company|co\b)", re.IGNORECASE)
CAPITALIZED_NAME = re.compile(r"\b[A-Z][\w&]+(?:\s+[A-Z][\w&]+){0,3}\b")
ALL_SYNONYMS = re.compile(r"\ball(\s+of\s+the\s+(above|those|them))?\b", re.IGNORECASE)

ACTION_PREFIX = re.compile(
    r"^(summarize|continue|resume|draft|write|compose|email|refine|save|track|start|"
    r"generate|rerun|retry|copy|share|compare)\b",
    re.IGNORECASE,
)
LEADING_VERB = re.compile(
    r"^(research|analy[sz]e|investigate|look\s*up|deep\s*dive|tell me about|find|discover|"
    r"explore|dig into)\s+",
    re.IGNORECASE,
)
NAME_STOP = re.compile(r"\s+(?:in|at|for|with|that|who|which|using|focused|within)\s+", re.IGNORECASE)

FRESH_INTEL = re.compile(
    r"recent|latest|today|yesterday|this week|signals?|news|breach|breaches|leadership|"
    r"funding|acquisition|hiring|layoff|changed|update|report",
    re.IGNORECASE,
)
EXPLICIT_SEARCH = re.compile(r"\b(search|look\s*up|google|browse|on the web|online)\b", re.IGNORECASE)
TRACKING_REQUEST = re.compile(
    r"\b(track|monitor|watch|add)\b.*\b(accounts?|compan(?:y|ies)|watch\s*list|list)\b"
    r"|^\s*(track|monitor)\b",
    re.IGNORECASE,
)
SHORT_QUESTION = re.compile(
    r"^(who|what|when|where|why|how|which|is|are|does|do|did|can|could|should|will|has|have)\b",
    re.IGNORECASE,
)
# Matched against lowercased text with punctuation stripped.
SMALL_TALK_OPENER = re.compile(
    r"^(hi|hello|hey|yo|thanks|thank you|thx|ok|okay|bye|"
    r"good (morning|afternoon|evening|night)|how are you|hows it going)\b"
)


def extract_company_name(raw: str) -> str:
    """Best-effort company name from a short request, or ``""``."""
    text = (raw or "").strip()
    if not text or ACTION_PREFIX.search(text):
        return ""
    text = LEADING_VERB.sub("", text).strip()
    text = text.replace("?", "").strip()
    stop = NAME_STOP.search(text)
    if stop and stop.start() > 0:
        text = text[: stop.start()].strip()
    text = re.sub(r"^[^A-Za-z0-9(]+", "", text)
    text = re.sub(r"[^A-Za-z0-9)&.\-\s]+$", "", text).strip()
    if not text:
        return ""

    words = text.split()[:6]
    formatted = " ".join(w if w.upper() == w else w[0].upper() + w[1:] for w in words).strip()
    if formatted.isdigit() or len(formatted) > 80:
        return ""
    return formatted


def _normalized(text: str) -> str:
    return re.sub(r"[^\w\s]", "", text.lower()).strip()


def word_count(text: str) -> int:
    return len(text.split())


@dataclass(frozen=True)
class IntentResult:
    is_research: bool
    mode: ResearchMode
    tools_enabled: bool
    model: str
    reasoning_effort: ReasoningEffort
    subject: str = ""
    bare_name: bool = False
    tracking_requested: bool = False


class IntentClassifier:
    def __init__(
        self,
        *,
        default_model: str,
        deep_model: str,
        short_message_max_words: int = 4,
        short_question_max_chars: int = 120,
        bare_name_max_words: int = 2,
        small_talk_terms: Iterable[str] = (),
    ):
        self.default_model = default_model
        self.deep_model = deep_model
        self.short_message_max_words = short_message_max_words
        self.short_question_max_chars = short_question_max_chars
        self.bare_name_max_words = bare_name_max_words
        self.small_talk_terms = tuple(_normalized(t) for t in small_talk_terms if t.strip())

    def is_research_text(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        if _normalized(text) in NON_RESEARCH_TERMS:
            return False
        if RESEARCH_VERBS.search(text) or ALL_SYNONYMS.search(text):
            return True
        if CAPITALIZED_NAME.search(text) and COMPANY_INDICATORS.search(text):
            return True
        if self.is_small_talk(text):
            return False
        if extract_company_name(text):
            return 0 < word_count(text) <= self.short_message_max_words
        return False

    def is_small_talk(self, text: str) -> bool:
        """Greetings and acknowledgements, including ones followed by filler words."""
        normalized = _normalized(text)
        if SMALL_TALK_OPENER.match(normalized):
            return True
        return any(
            normalized == term or normalized.startswith(term + " ") for term in self.small_talk_terms
        )

    def is_short_question(self, text: str) -> bool:
        text = text.strip()
        return bool(text) and len(text) <= self.short_question_max_chars and bool(
            SHORT_QUESTION.search(text) or text.endswith("?")
        )

    def model_for(self, mode: ResearchMode, fast_mode: bool) -> tuple[str, ReasoningEffort]:
        if mode == ResearchMode.DEEP:
            return self.deep_model, ReasoningEffort.HIGH
        if mode in (ResearchMode.SPECIFIC, ResearchMode.AUTO):
            return self.default_model, ReasoningEffort.LOW if fast_mode else ReasoningEffort.MEDIUM
        return self.default_model, ReasoningEffort.LOW

    def classify(
        self,
        message: str,
        *,
        explicit_mode: str | None = None,
        active_subject: str | None = None,
        fast_mode: bool = False,
        model_override: str | None = None,
    ) -> IntentResult:
        """Classify one user message. Falls back to "not research" on any error."""
        try:
            return self._classify(message, explicit_mode, active_subject, fast_mode, model_override)
        except Exception as e:
            logger.warning(f"Intent classification failed, treating as small talk: {e}")
            return IntentResult(
                is_research=False,
                mode=ResearchMode.NONE,
                tools_enabled=False,
                model=model_override or self.default_model,
                reasoning_effort=ReasoningEffort.LOW,
            )

    def _classify(
        self,
        message: str,
        explicit_mode: str | None,
        active_subject: str | None,
        fast_mode: bool,
        model_override: str | None,
    ) -> IntentResult:
        text = (message or "").strip()
        subject = (active_subject or "").strip()
        short_question = bool(subject) and self.is_short_question(text) and not self.is_small_talk(text)

        is_research = self.is_research_text(text)
        if explicit_mode or short_question:
            is_research = True

        if explicit_mode:
            mode = ResearchMode(explicit_mode)
        elif short_question:
            mode = ResearchMode.SPECIFIC
        elif is_research:
            mode = ResearchMode.AUTO
        else:
            mode = ResearchMode.NONE

        tracking = bool(TRACKING_REQUEST.search(text))
        if mode == ResearchMode.SPECIFIC:
            tools = bool(FRESH_INTEL.search(text) or EXPLICIT_SEARCH.search(text))
        elif mode in (ResearchMode.DEEP, ResearchMode.QUICK) or is_research:
            tools = True
        else:
            tools = tracking

        model, effort = self.model_for(mode, fast_mode)
        extracted = extract_company_name(text)
        bare_name = (
            bool(extracted)
            and 0 < word_count(text) <= self.bare_name_max_words
            and _normalized(text) not in NON_RESEARCH_TERMS
            and not RESEARCH_VERBS.search(text)
        )
        return IntentResult(
            is_research=is_research,
            mode=mode,
            tools_enabled=tools,
            model=model_override or model,
            reasoning_effort=effort,
            subject=extracted or subject,
            bare_name=bare_name,
            tracking_requested=tracking,
        )
