"""``add_tracked_accounts``: bulk-adds companies through the manage-accounts function."""
from __future__ import annotations

from typing import Any

import httpx

from research_chat.errors import ToolExecutionError
from research_chat.services import streaming
from research_chat.services.logger import logger
from research_chat.services.prompt_store import render_prompt
from research_chat.tools.registry import ToolContext, ToolResult, ToolSpec

ADD_TRACKED_ACCOUNTS = "add_tracked_accounts"


def tool_definition() -> dict[str, Any]:
    return {
        "type": "function",
        "name": ADD_TRACKED_ACCOUNTS,
        "description": render_prompt("tools.add_tracked_accounts"),
        "parameters": {
            "type": "object",
            "properties": {
                "companies": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "company_name": {"type": "string"},
                            "industry": {"type": ["string", "null"]},
                        },
                        "required": ["company_name", "industry"],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["companies"],
            "additionalProperties": False,
        },
        "strict": True,
    }


def parse_companies(arguments: dict[str, Any]) -> list[dict[str, Any]]:
    companies = arguments.get("companies")
    if not isinstance(companies, list):
        raise ToolExecutionError("'companies' must be a list")
    parsed = []
    for item in companies:
        if isinstance(item, str):
            item = {"company_name": item}
        name = str((item or {}).get("company_name") or "").strip()
        if name:
            parsed.append({"company_name": name, "industry": item.get("industry") or None})
    if not parsed:
        raise ToolExecutionError("No company names supplied")
    return parsed


def confirmation_text(names: list[str]) -> str:
    return render_prompt("tools.tracked_confirmation", companies=", ".join(names))


class TrackedAccountsTool:
    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._http_client = http_client

    def spec(self) -> ToolSpec:
        return ToolSpec(ADD_TRACKED_ACCOUNTS, tool_definition(), self.execute)

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        companies = parse_companies(arguments)
        names = [c["company_name"] for c in companies]
        payload = {"action": "bulk_add", "accounts": companies}
        headers = {
            "Authorization": context.authorization,
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }

        if self._http_client is not None:
            response = await self._http_client.post(self.endpoint, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.endpoint, json=payload, headers=headers)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(
                f"manage-accounts returned {e.response.status_code}"
            ) from e

        body = response.json() if response.content else {}
        summary = body.get("summary") or {}
        count = int(summary.get("added") or len(names))
        logger.info(f"Tracked accounts added for {context.user_id}: {names} ({count} new)")
        return ToolResult(
            output={"ok": True, "added": names, "count": count, "summary": summary},
            events=[streaming.accounts_added(count, names)],
            confirmation=confirmation_text(names),
        )
