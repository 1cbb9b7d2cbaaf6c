"""Supabase-backed collaborators: auth, user context, credits and usage."""
from __future__ import annotations

import asyncio
import math
from typing import Any

from supabase import Client, create_client

from research_chat.models.session import AuthenticatedUser, CreditStatus, UserContext
from research_chat.services.logger import logger

PENDING_MESSAGE = "Your account is pending approval. Please check your email or contact support"
RESTRICTED_MESSAGE = "Your account access has been restricted. Please contact support"
EXHAUSTED_MESSAGE = (
    "You have used all your free credits. Please contact support to request additional credits."
)
USER_COLUMNS = "id, credits_remaining, credits_total_used, approval_status"


async def _execute(query: Any) -> Any:
    """Run blocking Supabase query execution in a worker thread."""
    return await asyncio.to_thread(query.execute)


def credits_for_tokens(tokens: int) -> int:
    return math.ceil(max(tokens, 0) / 1000)


class SupabaseGateway:
    """Implements the user-context provider and the usage ledger."""

    def __init__(self, url: str, key: str, *, initial_credits: int = 1000):
        self._url = url
        self._key = key
        self._client: Client | None = None
        self.initial_credits = initial_credits

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    # --- Auth ---

    async def get_user(self, authorization: str) -> AuthenticatedUser | None:
        token = authorization.removeprefix("Bearer ").strip()
        if not token:
            return None
        try:
            response = await asyncio.to_thread(self.client.auth.get_user, token)
        except Exception as e:
            logger.warning(f"Token verification failed: {e}")
            return None
        user = getattr(response, "user", None)
        if user is None:
            return None
        return AuthenticatedUser(
            id=str(user.id), email=getattr(user, "email", None), authorization=authorization
        )

    # --- User context ---

    async def fetch_user_context(self, user_id: str) -> UserContext:
        result = await _execute(self.client.rpc("get_user_context", {"p_user": user_id}))
        return UserContext.from_rpc(result.data if isinstance(result.data, dict) else None)

    async def get_subject_snapshot(self, user_id: str, subject: str) -> str:
        """Executive summary of the most recent saved research on ``subject``."""
        if not subject:
            return ""
        result = await _execute(
            self.client.table("research_outputs")
            .select("subject, executive_summary, created_at")
            .eq("user_id", user_id)
            .ilike("subject", f"%{subject}%")
            .order("created_at", desc=True)
            .limit(1)
        )
        rows = result.data or []
        if not rows:
            return ""
        return str(rows[0].get("executive_summary") or "")[:1200]

    # --- Credits and usage ---

    async def check_credits(self, user_id: str) -> CreditStatus:
        result = await _execute(
            self.client.table("users").select(USER_COLUMNS).eq("id", user_id).limit(1)
        )
        row = (result.data or [None])[0]
        if row is None:
            inserted = await _execute(
                self.client.table("users").insert(
                    {
                        "id": user_id,
                        "credits_remaining": self.initial_credits,
                        "credits_total_used": 0,
                        "approval_status": "pending",
                    }
                )
            )
            row = (inserted.data or [{}])[0]

        remaining = int(row.get("credits_remaining") or 0)
        status = row.get("approval_status")
        if status == "pending":
            return CreditStatus(False, remaining, needs_approval=True, message=PENDING_MESSAGE)
        if status == "rejected":
            return CreditStatus(False, 0, needs_approval=True, message=RESTRICTED_MESSAGE)
        if remaining <= 0:
            return CreditStatus(False, 0, message=EXHAUSTED_MESSAGE)
        return CreditStatus(True, remaining)

    async def log_usage(
        self,
        user_id: str,
        action_type: str,
        tokens: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await _execute(
            self.client.table("usage_logs").insert(
                {
                    "user_id": user_id,
                    "action_type": action_type,
                    "tokens_used": tokens,
                    "tool_name": "chat",
                    "metadata": metadata or {},
                }
            )
        )

    async def deduct_credits(self, user_id: str, tokens: int) -> None:
        await _execute(
            self.client.rpc(
                "deduct_user_credits",
                {"p_user_id": user_id, "p_credits": credits_for_tokens(tokens)},
            )
        )

    async def update_chat_summary(self, chat_id: str, summary: str, message_count: int) -> None:
        await _execute(
            self.client.table("chats")
            .update({"summary": summary, "summary_message_count": message_count})
            .eq("id", chat_id)
        )
