"""Explicit collaborator bundle handed to every orchestrator instance."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from research_chat.config import Settings
from research_chat.llm_client import ResponsesProvider, get_client
from research_chat.models.session import AuthenticatedUser, UserContext
from research_chat.services.accounting import UsageLedger
from research_chat.services.background import BackgroundTaskRunner
from research_chat.services.instructions import DefaultInstructionBuilder, InstructionBuilder
from research_chat.services.offline import LoggingUsageLedger, StaticUserContextProvider
from research_chat.services.supabase import SupabaseGateway
from research_chat.tools.accounts import TrackedAccountsTool
from research_chat.tools.registry import ToolRegistry


class UserContextProvider(Protocol):
    async def fetch_user_context(self, user_id: str) -> UserContext: ...

    async def get_subject_snapshot(self, user_id: str, subject: str) -> str: ...


class Authenticator(Protocol):
    async def get_user(self, authorization: str) -> AuthenticatedUser | None: ...


@dataclass
class ChatDependencies:
    provider: ResponsesProvider
    user_context: UserContextProvider
    ledger: UsageLedger
    settings: Settings
    instructions: InstructionBuilder = field(default_factory=DefaultInstructionBuilder)
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    background: BackgroundTaskRunner = field(default_factory=BackgroundTaskRunner)
    authenticator: Authenticator | None = None


def build_dependencies(config: Settings) -> ChatDependencies:
    """Wire the production collaborators, or local stand-ins without Supabase."""
    provider = get_client(config)
    if config.supabase_url and (config.supabase_service_role_key or config.supabase_anon_key):
        gateway = SupabaseGateway(
            config.supabase_url,
            config.supabase_service_role_key or config.supabase_anon_key,
            initial_credits=config.initial_credits,
        )
        tools = ToolRegistry(
            [
                TrackedAccountsTool(
                    config.manage_accounts_url,
                    config.supabase_anon_key,
                    timeout=config.tool_timeout_seconds,
                ).spec()
            ]
        )
        return ChatDependencies(
            provider=provider,
            user_context=gateway,
            ledger=gateway,
            settings=config,
            tools=tools,
            authenticator=gateway,
        )
    return ChatDependencies(
        provider=provider,
        user_context=StaticUserContextProvider(),
        ledger=LoggingUsageLedger(),
        settings=config,
    )
