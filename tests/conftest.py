from __future__ import annotations

import pytest

from research_chat.models.session import AuthenticatedUser
from research_chat.tools.accounts import ADD_TRACKED_ACCOUNTS, confirmation_text, tool_definition
from research_chat.tools.registry import ToolRegistry, ToolResult, ToolSpec
from research_chat.services import streaming


@pytest.fixture
def user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="rep@example.com", authorization="Bearer token-1")


@pytest.fixture
def tracked_calls() -> list[dict]:
    return []


@pytest.fixture
def tracking_registry(tracked_calls) -> ToolRegistry:
    """Registry whose add_tracked_accounts records arguments instead of calling HTTP."""

    async def executor(arguments, context):
        tracked_calls.append(arguments)
        names = [c["company_name"] for c in arguments["companies"]]
        return ToolResult(
            output={"ok": True, "added": names},
            events=[streaming.accounts_added(len(names), names)],
            confirmation=confirmation_text(names),
        )

    return ToolRegistry([ToolSpec(ADD_TRACKED_ACCOUNTS, tool_definition(), executor)])
