"""Research Chat - streaming company research

Simple CLI that streams one chat message through the same orchestrator the
HTTP service uses.
"""

import argparse
import asyncio
import json

from research_chat.agents.orchestrator import StreamOrchestrator
from research_chat.config import settings
from research_chat.dependencies import build_dependencies
from research_chat.errors import UpstreamConnectError
from research_chat.models.events import DONE_SENTINEL
from research_chat.models.schemas import ChatConfig, ChatMessage, ChatRequest
from research_chat.models.session import AuthenticatedUser


def render_payload(payload: str, show_reasoning: bool = False) -> None:
    if payload == DONE_SENTINEL:
        print("\n[DONE]")
        return
    event = json.loads(payload)
    event_type = event.get("type")

    if event_type == "content":
        print(event.get("content", ""), end="", flush=True)

    elif event_type == "acknowledgment":
        print(f"[ack] {event.get('content', '')}")

    elif event_type == "reasoning_progress":
        print(f"[~] {event.get('content', '')}")

    elif event_type == "reasoning":
        if show_reasoning or event.get("stage") == "plan":
            print(event.get("content", ""), end="", flush=True)

    elif event_type == "web_search":
        print(f"\n[search] {event.get('query', '')}")
        for url in event.get("sources", []):
            print(f"   - {url}")

    elif event_type == "accounts_added":
        print(f"\n[+] {event.get('count')} account(s) added: {', '.join(event.get('companies', []))}")

    elif event_type == "tool_output" and not event.get("ok"):
        print(f"\n[!] Tool {event.get('name')} failed: {event.get('error')}")

    elif event_type == "timeout":
        print(f"\n[!] {event.get('message')}")

    elif event_type == "error":
        print(f"\n[!] Error: {event.get('error', 'Unknown error')}")


async def run_chat(
    message: str,
    mode: str | None = None,
    model: str | None = None,
    fast: bool = False,
    subject: str | None = None,
    show_reasoning: bool = False,
) -> int:
    deps = build_dependencies(settings)
    request = ChatRequest(
        messages=[ChatMessage(role="user", content=message)],
        mode=mode,
        config=ChatConfig(fast_mode=fast, model=model),
        active_subject=subject,
    )
    user = AuthenticatedUser(id=settings.cli_user_id)
    orchestrator = StreamOrchestrator(request, user, deps)

    print(f"Message: {message}")
    print("-" * 50)
    try:
        await orchestrator.prepare()
    except UpstreamConnectError as e:
        await orchestrator.discard()
        print(f"[!] Could not reach the provider: {e}")
        return 1

    async for payload in orchestrator.stream():
        render_payload(payload, show_reasoning=show_reasoning)

    await deps.background.drain(timeout=30)
    return 0 if orchestrator.completed else 1


def main():
    parser = argparse.ArgumentParser(description="Research Chat CLI")
    parser.add_argument("--message", "-q", required=True, help="Chat message")
    parser.add_argument("--mode", choices=["quick", "deep", "specific"], help="Research mode")
    parser.add_argument("--model", "-m", help="Model override (default: from mode)")
    parser.add_argument("--fast", action="store_true", help="Fast mode: brief answer, no plan")
    parser.add_argument("--subject", help="Company currently in focus")
    parser.add_argument("--show-reasoning", action="store_true", help="Print reasoning deltas")

    args = parser.parse_args()

    raise SystemExit(
        asyncio.run(
            run_chat(
                args.message,
                mode=args.mode,
                model=args.model,
                fast=args.fast,
                subject=args.subject,
                show_reasoning=args.show_reasoning,
            )
        )
    )


if __name__ == "__main__":
    main()
