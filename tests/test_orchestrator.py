from __future__ import annotations

import asyncio
import json
import time

import pytest

import fakes
from fakes import Sleep, decode, of_type
from research_chat.agents.orchestrator import StreamOrchestrator
from research_chat.errors import UpstreamConnectError
from research_chat.models.events import DONE_SENTINEL
from research_chat.models.schemas import ChatConfig, ChatMessage, ChatRequest
from research_chat.models.session import ResearchMode, SubscriptionRole, UserContext
from research_chat.services.deadline import CLIENT_DISCONNECT, DEADLINE
from research_chat.tools.accounts import ADD_TRACKED_ACCOUNTS, tool_definition
from research_chat.tools.registry import ToolRegistry, ToolResult, ToolSpec

PRIMARY = SubscriptionRole.PRIMARY
FAST_PLAN = SubscriptionRole.FAST_PLAN
TERMINAL = {"done", "error", "timeout"}


def chat(text: str, **kwargs) -> ChatRequest:
    return ChatRequest(messages=[ChatMessage(role="user", content=text)], **kwargs)


async def run_session(deps, request, user):
    orchestrator = StreamOrchestrator(request, user, deps)
    await orchestrator.prepare()
    payloads = [p async for p in orchestrator.stream()]
    await deps.background.drain(timeout=5)
    return orchestrator, payloads


def answer_script(*parts: str, total_tokens: int | None = None) -> list:
    return [
        fakes.created("resp_1"),
        fakes.reasoning_delta("Checking recent filings."),
        *[fakes.text_delta(p) for p in parts],
        fakes.completed("resp_1", total_tokens=total_tokens),
    ]


def assert_well_terminated(payloads: list[str]) -> list[dict]:
    assert payloads[-1] == DONE_SENTINEL
    assert payloads.count(DONE_SENTINEL) == 1
    events = decode(payloads)
    terminals = [e for e in events if e["type"] in TERMINAL]
    assert len(terminals) == 1
    assert events[-1] is terminals[0]
    return events


# --- Scenarios ---


@pytest.mark.asyncio
async def test_research_request_streams_plan_and_answer(user):
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: answer_script("Boeing is ", "an aerospace company."),
            FAST_PLAN: [
                fakes.text_delta("Starting auto research now, ETA about 90 sec.\n"),
                fakes.text_delta("- Check recent Boeing news\n- Review leadership changes"),
                fakes.completed("plan_1"),
            ],
        }
    )
    deps = fakes.make_deps(provider)

    orchestrator, payloads = await run_session(deps, chat("Research Boeing"), user)

    events = assert_well_terminated(payloads)
    assert orchestrator.session.mode == ResearchMode.AUTO
    assert orchestrator.session.tools_enabled is True
    assert orchestrator.fast_plan.acknowledged is True
    (ack,) = of_type(events, "acknowledgment")
    assert ack["stage"] == "plan"
    assert ack["content"].startswith("Starting auto research")
    plan_lines = [e for e in of_type(events, "reasoning") if e.get("stage") == "plan"]
    assert "Check recent Boeing news" in "".join(e["content"] for e in plan_lines)
    assert of_type(events, "reasoning_progress")
    assert "".join(e["content"] for e in of_type(events, "content")) == (
        "Boeing is an aerospace company."
    )
    assert events[-1] == {"type": "done", "response_id": "resp_1"}
    primary = provider.request_for(PRIMARY)
    assert {"type": "web_search"} in primary.tools
    assert "Request: Research Boeing" in primary.input


@pytest.mark.asyncio
async def test_small_talk_skips_tools_and_plan(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("Hi! What company ", "should I look at?")})
    deps = fakes.make_deps(provider)

    orchestrator, payloads = await run_session(deps, chat("hello"), user)

    events = assert_well_terminated(payloads)
    assert orchestrator.session.mode == ResearchMode.NONE
    assert provider.roles() == [PRIMARY]
    assert provider.request_for(PRIMARY).tools == []
    assert of_type(events, "web_search") == []
    assert of_type(events, "tool_output") == []
    assert of_type(events, "acknowledgment")[0]["content"] == "Okay. Answering briefly."
    assert "tool_policy" in provider.request_for(PRIMARY).instructions


@pytest.mark.asyncio
async def test_deep_tracking_request_adds_accounts(user, tracking_registry, tracked_calls):
    args = json.dumps(
        {
            "companies": [
                {"company_name": "Boeing", "industry": "Aerospace"},
                {"company_name": "Airbus", "industry": "Aerospace"},
                {"company_name": "Lockheed Martin", "industry": "Defense"},
            ]
        }
    )
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created("resp_7"),
                fakes.text_delta("Adding them now."),
                fakes.function_call_added("fc_1", "add_tracked_accounts"),
                *[fakes.arguments_delta("fc_1", args[i : i + 11]) for i in range(0, len(args), 11)],
                fakes.arguments_done("fc_1"),
                fakes.completed("resp_7"),
            ],
        }
    )
    deps = fakes.make_deps(provider, tools=tracking_registry)

    orchestrator, payloads = await run_session(
        deps, chat("Track Boeing, Airbus and Lockheed Martin as accounts", mode="deep"), user
    )

    events = assert_well_terminated(payloads)
    (added,) = of_type(events, "accounts_added")
    assert added["count"] == 3
    assert added["companies"] == ["Boeing", "Airbus", "Lockheed Martin"]
    content = "".join(e["content"] for e in of_type(events, "content"))
    assert "Boeing, Airbus, Lockheed Martin" in content
    assert content == orchestrator.answer
    assert len(tracked_calls) == 1
    assert provider.request_for(PRIMARY).model == "gpt-5"
    assert events[-1]["type"] == "done"


@pytest.mark.asyncio
async def test_deadline_expiry_emits_single_timeout(user):
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [fakes.created("resp_1"), Sleep(2.0), fakes.text_delta("too late")],
            FAST_PLAN: [Sleep(2.0), fakes.text_delta("never")],
        }
    )
    settings = fakes.make_settings(streaming_deadline_seconds=0.05, upstream_close_grace_seconds=0.1)
    ledger = fakes.FakeLedger()
    deps = fakes.make_deps(provider, settings=settings, ledger=ledger)

    started = time.monotonic()
    orchestrator, payloads = await run_session(deps, chat("Research Boeing"), user)

    assert time.monotonic() - started < 1.5
    events = assert_well_terminated(payloads)
    (timeout,) = of_type(events, "timeout")
    assert "partial results" in timeout["message"]
    assert of_type(events, "content") == []
    assert of_type(events, "done") == []
    assert orchestrator.session.cancelled is True
    assert orchestrator.session.cancel_reason == DEADLINE
    assert orchestrator.deadline.open_subscriptions == 0
    assert provider.streams[PRIMARY].closed is True
    assert ledger.usage == []


@pytest.mark.asyncio
async def test_plain_tracking_list_runs_tool_without_research(user, tracking_registry, tracked_calls):
    args = json.dumps(
        {
            "companies": [
                {"company_name": "Boeing"},
                {"company_name": "Lockheed"},
                {"company_name": "Raytheon"},
            ]
        }
    )
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created("resp_3"),
                fakes.function_call_added("fc_1", "add_tracked_accounts"),
                fakes.arguments_delta("fc_1", args),
                fakes.arguments_done("fc_1"),
                fakes.completed("resp_3"),
            ],
        }
    )
    deps = fakes.make_deps(provider, tools=tracking_registry)

    orchestrator, payloads = await run_session(deps, chat("track Boeing, Lockheed, Raytheon"), user)

    events = assert_well_terminated(payloads)
    assert orchestrator.session.mode == ResearchMode.NONE
    assert orchestrator.session.tools_enabled is True
    assert provider.roles() == [PRIMARY]
    primary = provider.request_for(PRIMARY)
    assert ADD_TRACKED_ACCOUNTS in primary.instructions
    assert any(t.get("name") == ADD_TRACKED_ACCOUNTS for t in primary.tools)
    (added,) = of_type(events, "accounts_added")
    assert added["count"] == 3
    assert added["companies"] == ["Boeing", "Lockheed", "Raytheon"]
    assert "Boeing, Lockheed, Raytheon" in "".join(e["content"] for e in of_type(events, "content"))
    assert len(tracked_calls) == 1
    assert events[-1] == {"type": "done", "response_id": "resp_3"}


@pytest.mark.asyncio
async def test_deadline_during_tool_execution_ends_with_timeout(user):
    executed: list[dict] = []

    async def slow_executor(arguments, context):
        await asyncio.sleep(5)
        executed.append(arguments)
        return ToolResult(output={"ok": True}, confirmation="✅ Added.")

    registry = ToolRegistry([ToolSpec(ADD_TRACKED_ACCOUNTS, tool_definition(), slow_executor)])
    args = json.dumps({"companies": [{"company_name": "Boeing"}]})
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created("resp_1"),
                fakes.text_delta("Adding them."),
                fakes.function_call_delta("call_1", "add_tracked_accounts", args),
                fakes.function_call_done("call_1"),
                fakes.text_delta("after"),
                fakes.completed("resp_1"),
            ],
        }
    )
    settings = fakes.make_settings(
        streaming_deadline_seconds=0.2,
        upstream_close_grace_seconds=0.1,
        tool_timeout_seconds=10,
    )
    deps = fakes.make_deps(provider, settings=settings, tools=registry)

    started = time.monotonic()
    orchestrator, payloads = await run_session(deps, chat("track Boeing"), user)

    assert time.monotonic() - started < 1.5
    events = assert_well_terminated(payloads)
    (timeout,) = of_type(events, "timeout")
    assert events[-1] is timeout
    assert [e["content"] for e in of_type(events, "content")] == ["Adding them."]
    assert of_type(events, "accounts_added") == []
    assert executed == []
    assert orchestrator.session.cancel_reason == DEADLINE
    assert orchestrator.deadline.open_subscriptions == 0


# --- Properties ---


@pytest.mark.asyncio
async def test_no_ping_after_first_content(user):
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created(),
                Sleep(0.08),
                fakes.text_delta("one "),
                Sleep(0.06),
                fakes.text_delta("two"),
                fakes.completed(),
            ]
        }
    )
    settings = fakes.make_settings(keepalive_initial_seconds=0.01, keepalive_max_seconds=0.02)
    deps = fakes.make_deps(provider, settings=settings)

    _, payloads = await run_session(deps, chat("hello"), user)

    types = [e["type"] for e in decode(payloads)]
    first_content = types.index("content")
    assert "ping" in types[:first_content]
    assert "ping" not in types[first_content:]


@pytest.mark.asyncio
async def test_no_ping_when_content_arrives_before_first_interval(user):
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created(),
                fakes.text_delta("Quick answer."),
                Sleep(0.3),
                fakes.completed(),
            ]
        }
    )
    settings = fakes.make_settings(keepalive_initial_seconds=0.1, keepalive_max_seconds=0.1)
    deps = fakes.make_deps(provider, settings=settings)

    _, payloads = await run_session(deps, chat("hello"), user)

    events = assert_well_terminated(payloads)
    assert of_type(events, "ping") == []
    assert of_type(events, "content")[0]["content"] == "Quick answer."


@pytest.mark.asyncio
async def test_fast_plan_failure_leaves_primary_events_untouched(user):
    def primary_events(payloads):
        return [
            e for e in decode(payloads)
            if e["type"] in ("content", "done", "web_search") and e.get("stage") != "plan"
        ]

    script = answer_script("Acme ", "builds rockets.")
    healthy = fakes.FakeResponsesProvider(
        {PRIMARY: list(script), FAST_PLAN: [fakes.text_delta("Ok.\n- step"), fakes.completed()]}
    )
    broken = fakes.FakeResponsesProvider(
        {PRIMARY: list(script), FAST_PLAN: [fakes.text_delta("Ok."), RuntimeError("plan died")]}
    )
    unreachable = fakes.FakeResponsesProvider(
        {PRIMARY: list(script)},
        connect_errors={FAST_PLAN: RuntimeError("502 from provider")},
    )

    _, healthy_payloads = await run_session(fakes.make_deps(healthy), chat("Research Acme"), user)
    for provider in (broken, unreachable):
        _, payloads = await run_session(fakes.make_deps(provider), chat("Research Acme"), user)
        assert_well_terminated(payloads)
        assert primary_events(payloads) == primary_events(healthy_payloads)
        failures = [
            e for e in of_type(decode(payloads), "reasoning_progress")
            if e["content"].startswith("Plan generation failed")
        ]
        assert len(failures) == 1


@pytest.mark.asyncio
async def test_fast_plan_skipped_in_fast_mode_and_when_disabled(user):
    for config in (ChatConfig(fast_mode=True), ChatConfig(disable_fast_plan=True)):
        provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("ok")})
        _, payloads = await run_session(
            fakes.make_deps(provider), chat("Research Acme", config=config), user
        )
        assert provider.roles() == [PRIMARY]
        acks = of_type(decode(payloads), "acknowledgment")
        assert acks[0]["content"] == "Got it. I'll research that and stream findings."


@pytest.mark.asyncio
async def test_mid_stream_failure_keeps_partial_content(user):
    provider = fakes.FakeResponsesProvider(
        {PRIMARY: [fakes.created(), fakes.text_delta("Partial "), RuntimeError("connection reset")]}
    )
    orchestrator, payloads = await run_session(fakes.make_deps(provider), chat("hello"), user)

    events = assert_well_terminated(payloads)
    assert of_type(events, "content")[0]["content"] == "Partial "
    assert events[-1] == {"type": "error", "error": "connection reset"}
    assert orchestrator.completed is False


@pytest.mark.asyncio
async def test_provider_failed_event_becomes_error(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: [fakes.created(), fakes.failed("rate limited")]})
    _, payloads = await run_session(fakes.make_deps(provider), chat("hello"), user)
    assert decode(payloads)[-1] == {"type": "error", "error": "rate limited"}


@pytest.mark.asyncio
async def test_stream_ending_without_completion_is_an_error(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: [fakes.created(), fakes.text_delta("Half")]})
    _, payloads = await run_session(fakes.make_deps(provider), chat("hello"), user)
    events = assert_well_terminated(payloads)
    assert events[-1]["type"] == "error"


@pytest.mark.asyncio
async def test_malformed_tool_arguments_do_not_end_the_answer(user, tracking_registry, tracked_calls):
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created(),
                fakes.function_call_delta("call_1", "add_tracked_accounts", '{"companies": [{'),
                fakes.function_call_done("call_1"),
                fakes.text_delta("I could not add those."),
                fakes.completed(),
            ]
        }
    )
    deps = fakes.make_deps(provider, tools=tracking_registry)
    _, payloads = await run_session(deps, chat("track acme accounts"), user)

    events = assert_well_terminated(payloads)
    (tool_output,) = of_type(events, "tool_output")
    assert tool_output["ok"] is False
    assert tracked_calls == []
    assert events[-1]["type"] == "done"


@pytest.mark.asyncio
async def test_web_search_sources_are_capped(user):
    urls = [f"https://news{i}.example" for i in range(9)]
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created(),
                fakes.web_search_done("boeing news", urls),
                fakes.text_delta("Summary."),
                fakes.completed(),
            ]
        }
    )
    _, payloads = await run_session(
        fakes.make_deps(provider), chat("Research Boeing", config=ChatConfig(disable_fast_plan=True)), user
    )
    (search,) = of_type(decode(payloads), "web_search")
    assert search["query"] == "boeing news"
    assert search["sources"] == urls[:5]


@pytest.mark.asyncio
async def test_quick_mode_coalesces_reasoning(user):
    deltas = [f"step {i} of the analysis; " for i in range(30)]
    provider = fakes.FakeResponsesProvider(
        {
            PRIMARY: [
                fakes.created(),
                *[fakes.reasoning_delta(d) for d in deltas],
                fakes.text_delta("Done."),
                fakes.completed(),
            ]
        }
    )
    settings = fakes.make_settings(quick_reasoning_flush_seconds=60, quick_reasoning_tail_chars=80)
    deps = fakes.make_deps(provider, settings=settings)
    _, payloads = await run_session(
        deps, chat("Acme", mode="quick", config=ChatConfig(disable_fast_plan=True)), user
    )

    reasoning = [e for e in of_type(decode(payloads), "reasoning") if e.get("stage") != "plan"]
    assert len(reasoning) == 1
    assert len(reasoning[0]["content"]) <= 81
    assert reasoning[0]["content"].endswith("step 29 of the analysis;")
    assert provider.request_for(PRIMARY).max_output_tokens == 450


@pytest.mark.asyncio
async def test_reasoning_is_forwarded_verbatim_outside_quick_mode(user):
    deltas = ["Looking ", "at ", "filings."]
    provider = fakes.FakeResponsesProvider(
        {PRIMARY: [fakes.created(), *[fakes.reasoning_delta(d) for d in deltas], fakes.completed()]}
    )
    _, payloads = await run_session(fakes.make_deps(provider), chat("hello"), user)
    events = decode(payloads)
    assert [e["content"] for e in of_type(events, "reasoning")] == deltas
    starts = [e for e in of_type(events, "meta") if e.get("event") == "reasoning_start"]
    assert len(starts) == 1


@pytest.mark.asyncio
async def test_first_content_meta_reports_latencies(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("a", "b")})
    _, payloads = await run_session(fakes.make_deps(provider), chat("hello"), user)
    metas = [e for e in of_type(decode(payloads), "meta") if e.get("event") == "first_delta"]
    assert len(metas) == 1
    assert metas[0]["stage"] == "primary"
    assert metas[0]["ttfb_ms"] >= 0
    assert metas[0]["reasoning_to_content_ms"] >= 0


# --- Secondary paths ---


@pytest.mark.asyncio
async def test_summarize_source_bypasses_research(user):
    provider = fakes.FakeResponsesProvider(
        {SubscriptionRole.SUMMARIZATION: [fakes.text_delta("- Key point"), fakes.completed("sum_1")]}
    )
    request = chat("Summarize this for me", config=ChatConfig(summarize_source="Long article text"))
    _, payloads = await run_session(fakes.make_deps(provider), request, user)

    events = assert_well_terminated(payloads)
    assert provider.roles() == [SubscriptionRole.SUMMARIZATION]
    assert of_type(events, "content")[0]["content"] == "- Key point"
    assert events[-1] == {"type": "done", "response_id": "sum_1"}


@pytest.mark.asyncio
async def test_summarization_failure_is_informational(user):
    provider = fakes.FakeResponsesProvider(
        connect_errors={SubscriptionRole.SUMMARIZATION: RuntimeError("provider down")}
    )
    request = chat("Summarize", config=ChatConfig(summarize_source="text"))
    _, payloads = await run_session(fakes.make_deps(provider), request, user)

    events = assert_well_terminated(payloads)
    (notice,) = of_type(events, "reasoning_progress")
    assert notice["content"].startswith("Could not summarize")
    assert events[-1]["type"] == "done"


@pytest.mark.asyncio
async def test_bare_name_is_resolved_before_answering(user):
    resolution = json.dumps(
        {
            "top": {"name": "Stripe, Inc.", "industry": "Payments", "website": "stripe.com", "confidence": 0.92},
            "alternates": [{"name": "Stripe Logistics", "industry": "Freight"}],
        }
    )
    provider = fakes.FakeResponsesProvider(
        {PRIMARY: answer_script("Stripe runs payments.")},
        completions={SubscriptionRole.SUBJECT_RESOLUTION: resolution},
    )
    deps = fakes.make_deps(provider, settings=fakes.make_settings(fast_plan_enabled=False))
    orchestrator, payloads = await run_session(deps, chat("stripe"), user)

    progress = [e["content"] for e in of_type(decode(payloads), "reasoning_progress")]
    assert progress[0] == 'Interpreting "Stripe" as a company...'
    assert progress[1] == "Proceeding with Stripe, Inc. (Payments, stripe.com)"
    assert orchestrator.resolved_subject.alternates == ["Stripe Logistics"]
    primary = provider.request_for(PRIMARY)
    assert "resolved_subject" in primary.instructions
    assert "The company in focus is Stripe, Inc." in primary.input


@pytest.mark.asyncio
async def test_subject_resolution_failure_is_not_fatal(user):
    provider = fakes.FakeResponsesProvider(
        {PRIMARY: answer_script("Answer.")},
        completions={SubscriptionRole.SUBJECT_RESOLUTION: RuntimeError("bad gateway")},
    )
    deps = fakes.make_deps(provider, settings=fakes.make_settings(fast_plan_enabled=False))
    orchestrator, payloads = await run_session(deps, chat("acme"), user)

    events = assert_well_terminated(payloads)
    assert orchestrator.resolved_subject is None
    assert not any(e["content"].startswith("Proceeding") for e in of_type(events, "reasoning_progress"))
    assert events[-1]["type"] == "done"


@pytest.mark.asyncio
async def test_follow_up_question_carries_active_subject(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("Kelly Ortberg.")})
    deps = fakes.make_deps(provider, settings=fakes.make_settings(fast_plan_enabled=False))
    orchestrator, _ = await run_session(
        deps, chat("Who is their CEO?", active_subject="Boeing"), user
    )

    assert orchestrator.session.mode == ResearchMode.SPECIFIC
    assert "The company in focus is Boeing." in provider.request_for(PRIMARY).input


@pytest.mark.asyncio
async def test_preview_uses_saved_profile(user):
    context = UserContext(profile={"company_name": "Initech", "industry": "Software"})
    provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("ok")})
    deps = fakes.make_deps(
        provider,
        settings=fakes.make_settings(fast_plan_enabled=False),
        user_context=fakes.FakeUserContextProvider(context),
    )
    _, payloads = await run_session(deps, chat("Research Acme"), user)
    previews = of_type(decode(payloads), "reasoning_progress")
    assert previews[0]["content"].startswith("Planning next steps using: Your org: Initech")
    assert "Initech" in provider.request_for(PRIMARY).instructions


@pytest.mark.asyncio
async def test_fast_mode_caps_output_and_context(user):
    history = [ChatMessage(role="user", content=f"turn {i}") for i in range(6)]
    request = ChatRequest(
        messages=[*history, ChatMessage(role="user", content="Research Acme")],
        config=ChatConfig(fast_mode=True),
    )
    provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("ok")})
    await run_session(fakes.make_deps(provider), request, user)

    primary = provider.request_for(PRIMARY)
    assert primary.max_output_tokens == 500
    assert "User: turn 5" in primary.input
    assert "User: turn 4" not in primary.input


# --- Connect failures, disconnects, accounting ---


@pytest.mark.asyncio
async def test_primary_connect_failure_raises_before_streaming(user):
    provider = fakes.FakeResponsesProvider(connect_errors={PRIMARY: RuntimeError("401 invalid key")})
    deps = fakes.make_deps(provider)
    orchestrator = StreamOrchestrator(chat("hello"), user, deps)

    with pytest.raises(UpstreamConnectError):
        await orchestrator.prepare()
    await orchestrator.discard()

    assert orchestrator.emitter.closed is True
    assert orchestrator.deadline.open_subscriptions == 0


@pytest.mark.asyncio
async def test_client_disconnect_cancels_upstream(user):
    provider = fakes.FakeResponsesProvider(
        {PRIMARY: [fakes.created(), Sleep(5), fakes.text_delta("never sent")]}
    )
    ledger = fakes.FakeLedger()
    deps = fakes.make_deps(provider, ledger=ledger)
    orchestrator = StreamOrchestrator(chat("hello"), user, deps)
    await orchestrator.prepare()

    stream = orchestrator.stream()
    await stream.__anext__()
    await stream.aclose()
    await deps.background.drain(timeout=2)

    assert orchestrator.session.cancel_reason == CLIENT_DISCONNECT
    assert provider.streams[PRIMARY].closed is True
    assert orchestrator.deadline.open_subscriptions == 0
    assert ledger.usage == []


@pytest.mark.asyncio
async def test_completed_session_is_charged_in_background(user):
    provider = fakes.FakeResponsesProvider(
        {PRIMARY: answer_script("Answer.", total_tokens=2400)},
        completions={SubscriptionRole.SUMMARIZATION: "Discussed Acme's funding."},
    )
    ledger = fakes.FakeLedger()
    deps = fakes.make_deps(provider, ledger=ledger, settings=fakes.make_settings(fast_plan_enabled=False))

    await run_session(deps, chat("Research Acme", chatId="chat-9"), user)

    ((user_id, action, tokens, metadata),) = ledger.usage
    assert (user_id, action, tokens) == ("user-1", "chat_completion", 2400)
    assert metadata["chat_id"] == "chat-9"
    assert metadata["final_response_id"] == "resp_1"
    assert ledger.deductions == [("user-1", 2400)]
    assert ledger.summaries == [("chat-9", "Discussed Acme's funding.", 2)]


@pytest.mark.asyncio
async def test_usage_estimate_when_provider_reports_none(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: answer_script("Hi.")})
    ledger = fakes.FakeLedger()
    await run_session(fakes.make_deps(provider, ledger=ledger), chat("hello"), user)

    ((_, _, tokens, metadata),) = ledger.usage
    assert tokens > 0
    assert metadata["estimated"] is True
    assert ledger.summaries == []


@pytest.mark.asyncio
async def test_incomplete_sessions_can_be_charged(user):
    provider = fakes.FakeResponsesProvider({PRIMARY: [fakes.created(), Sleep(2.0)]})
    ledger = fakes.FakeLedger()
    settings = fakes.make_settings(streaming_deadline_seconds=0.05, charge_incomplete_sessions=True)
    await run_session(fakes.make_deps(provider, ledger=ledger, settings=settings), chat("hello"), user)
    assert len(ledger.usage) == 1
    assert len(ledger.deductions) == 1
