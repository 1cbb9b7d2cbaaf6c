"""In-process collaborators used when Supabase is not configured (CLI, local runs)."""
from __future__ import annotations

from typing import Any

from research_chat.models.session import CreditStatus, UserContext
from research_chat.services.logger import logger


class StaticUserContextProvider:
    def __init__(self, context: UserContext | None = None):
        self._context = context or UserContext()

    async def fetch_user_context(self, user_id: str) -> UserContext:
        return self._context

    async def get_subject_snapshot(self, user_id: str, subject: str) -> str:
        return ""


class LoggingUsageLedger:
    """Unlimited credits; usage is written to the log only."""

    async def check_credits(self, user_id: str) -> CreditStatus:
        return CreditStatus(True, remaining=0)

    async def log_usage(
        self, user_id: str, action_type: str, tokens: int, metadata: dict[str, Any] | None = None
    ) -> None:
        logger.info(f"USAGE: user={user_id} action={action_type} tokens={tokens}")

    async def deduct_credits(self, user_id: str, tokens: int) -> None:
        logger.debug(f"Credit deduction skipped for {user_id} ({tokens} tokens)")

    async def update_chat_summary(self, chat_id: str, summary: str, message_count: int) -> None:
        logger.debug(f"Chat {chat_id} summary: {summary}")
