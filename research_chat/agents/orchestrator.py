from __future__ import annotations

import time
from contextlib import aclosing
from typing import AsyncIterator, Callable

from research_chat.agents.fast_plan import FastPlanCoordinator, build_plan_request
from research_chat.agents.intent import IntentClassifier, IntentResult
from research_chat.agents.subject_resolver import ResolvedSubject, SubjectResolver
from research_chat.agents.summarizer import build_summarization_request
from research_chat.dependencies import ChatDependencies
from research_chat.errors import UpstreamCancelled, UpstreamConnectError
from research_chat.llm_client import GenerationRequest, UpstreamSubscription, open_subscription
from research_chat.models.events import EventType, NormalizedEvent, ProviderEvent, ProviderEventKind
from research_chat.models.schemas import ChatRequest
from research_chat.models.session import (
    AuthenticatedUser,
    RequestSession,
    ResearchMode,
    SubscriptionRole,
    UserContext,
)
from research_chat.services import logger as log_service
from research_chat.services import streaming
from research_chat.services.accounting import UsageAccountant, UsageRecord
from research_chat.services.deadline import CLIENT_DISCONNECT, DeadlineController
from research_chat.services.emitter import NormalizedEventEmitter, QueueChannel
from research_chat.services.instructions import (
    build_primary_input,
    effective_request,
    subject_details,
    with_hints,
)
from research_chat.services.keepalive import KeepAliveScheduler
from research_chat.services.prompt_store import render_prompt
from research_chat.services.reasoning import ReasoningCoalescer
from research_chat.tools.registry import ToolContext
from research_chat.tools.tool_calls import ToolCallAccumulator

CONNECT_FAILED = "connect_failed"
WEB_SEARCH_INCLUDE = ["web_search_call.action.sources"]


class StreamOrchestrator:
    """Drives one chat exchange from classification to the ``[DONE]`` sentinel.

    Flow:
      1. ``prepare()``: classify, fetch context, build instructions, start the
         deadline and the fast plan, connect the primary stream. Connect
         failures raise UpstreamConnectError before any byte is streamed.
      2. ``run()``: consume the primary stream, dispatch canonical events,
         emit exactly one terminal event, close the channel.
      3. Usage accounting is spawned after the channel is closed.

    The orchestrator writes only to its channel and knows nothing about the
    hosting adapter.
    """

    def __init__(
        self,
        request: ChatRequest,
        user: AuthenticatedUser,
        deps: ChatDependencies,
        *,
        channel: QueueChannel | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = deps.settings
        self.request = request
        self.user = user
        self.deps = deps
        self.settings = cfg
        self.channel = channel or QueueChannel()
        self._clock = clock
        self._started = clock()

        self.session = RequestSession(
            fast_mode=request.config.fast_mode,
            chat_id=request.chat_id,
            user_id=user.id,
        )
        session_id = self.session.session_id
        self.emitter = NormalizedEventEmitter(self.channel, session_id=session_id)
        self.deadline = DeadlineController(
            self.session,
            timeout_seconds=cfg.streaming_deadline_seconds,
            ceiling_seconds=cfg.streaming_deadline_ceiling_seconds,
            grace_seconds=cfg.upstream_close_grace_seconds,
        )
        self.keepalive = KeepAliveScheduler(
            self.emitter,
            initial_seconds=cfg.keepalive_initial_seconds,
            backoff_factor=cfg.keepalive_backoff_factor,
            max_seconds=cfg.keepalive_max_seconds,
        )
        self.classifier = IntentClassifier(
            default_model=cfg.default_model,
            deep_model=cfg.deep_model,
            short_message_max_words=cfg.short_message_max_words,
            short_question_max_chars=cfg.short_question_max_chars,
            bare_name_max_words=cfg.bare_name_max_words,
            small_talk_terms=cfg.small_talk_term_list,
        )
        self.accumulator = ToolCallAccumulator(
            deps.tools,
            ToolContext(user_id=user.id, authorization=user.authorization, session_id=session_id),
            timeout_seconds=cfg.tool_timeout_seconds,
            max_sources=cfg.web_search_max_sources,
        )

        self.intent: IntentResult | None = None
        self.user_context = UserContext()
        self.resolved_subject: ResolvedSubject | None = None
        self._subscription: UpstreamSubscription | None = None
        self._fast_plan: FastPlanCoordinator | None = None
        self._coalescer: ReasoningCoalescer | None = None
        self._summarizing = False
        self._answer_parts: list[str] = []
        self._response_id: str | None = None
        self._usage_tokens: int | None = None
        self._completed = False
        self._reasoning_started_at: float | None = None
        self._first_content_at: float | None = None
        self._accounted = False

    # --- Public surface ---

    @property
    def answer(self) -> str:
        return "".join(self._answer_parts)

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def fast_plan(self) -> FastPlanCoordinator | None:
        return self._fast_plan

    def _elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    async def prepare(self) -> None:
        """Everything up to and including the primary connect."""
        request = self.request
        config = request.config
        message = request.last_user_message
        subject = request.active_subject_clean

        intent = self.classifier.classify(
            message,
            explicit_mode=request.mode,
            active_subject=subject,
            fast_mode=config.fast_mode,
            model_override=config.model,
        )
        self.intent = intent
        self.session.mode = intent.mode
        self.session.tools_enabled = intent.tools_enabled
        self.session.model = intent.model
        self.session.reasoning_effort = intent.reasoning_effort
        if intent.mode == ResearchMode.QUICK or config.fast_mode:
            self._coalescer = ReasoningCoalescer(
                flush_seconds=self.settings.quick_reasoning_flush_seconds,
                tail_chars=self.settings.quick_reasoning_tail_chars,
                clock=self._clock,
            )
        log_service.log_stream_step(
            self.session.session_id,
            "classification",
            "completed",
            {
                "is_research": intent.is_research,
                "mode": intent.mode.value,
                "tools": intent.tools_enabled,
                "model": intent.model,
                "effort": intent.reasoning_effort.value,
            },
        )

        self.deadline.start()

        context_start = self._clock()
        self.user_context = await self._fetch_user_context()
        context_ms = int((self._clock() - context_start) * 1000)

        if config.summarize_source:
            await self._connect_summarization(config.summarize_source, message)
            return

        instructions = self.deps.instructions.build(self.user_context, intent.mode, config)
        snapshot = await self._subject_snapshot(subject) if intent.is_research else None

        if intent.is_research and (intent.bare_name or config.disambiguate_subject):
            self.resolved_subject = await self._resolve_subject(intent.subject or subject)

        instructions = with_hints(
            instructions,
            config=config,
            tools_enabled=intent.tools_enabled,
            tracking_requested=intent.tracking_requested,
            subject_snapshot=snapshot,
            resolved_subject=self.resolved_subject.as_hint() if self.resolved_subject else None,
        )
        request_text = effective_request(message, subject)
        if self.resolved_subject and self.resolved_subject.name.lower() not in request_text.lower():
            request_text = render_prompt(
                "requests.follow_up_context",
                request=request_text,
                subject=self.resolved_subject.name,
            )

        if intent.is_research:
            await self.emitter.emit(streaming.reasoning_progress(self._preview_line()))

        if self._fast_plan_eligible():
            self._start_fast_plan(message)
        else:
            await self._static_acknowledgment(message)

        turns = (
            self.settings.fast_recent_context_turns
            if config.fast_mode
            else self.settings.recent_context_turns
        )
        primary = GenerationRequest(
            role=SubscriptionRole.PRIMARY,
            model=intent.model,
            instructions=instructions,
            input=build_primary_input(
                request.messages, request_text, is_research=intent.is_research, turns=turns
            ),
            reasoning_effort=intent.reasoning_effort,
            tools=self.deps.tools.provider_tools() if intent.tools_enabled else [],
            include=list(WEB_SEARCH_INCLUDE) if intent.tools_enabled else [],
            max_output_tokens=self._output_budget(),
            metadata={
                "chat_id": request.chat_id,
                "user_id": self.user.id,
                "mode": intent.mode.value,
            },
        )
        await self.emitter.emit(
            streaming.meta(
                stage="primary",
                event="connect",
                response_id="pending",
                model=intent.model,
                mode=intent.mode.value,
                timings={"context_ms": context_ms, "prep_ms": self._elapsed_ms()},
            )
        )
        await self._connect(primary)

    async def run(self) -> None:
        """Consume the primary stream and terminate the channel exactly once."""
        self.keepalive.start()
        terminal: NormalizedEvent | None = None
        try:
            terminal = await self._stream()
            if self._fast_plan is not None:
                if terminal.type == EventType.DONE:
                    await self._fast_plan.wait(self.settings.fast_plan_wait_seconds)
                else:
                    await self._fast_plan.cancel()
            if terminal.type == EventType.TIMEOUT:
                log_service.log_event(
                    event_type="session_timeout",
                    message="Session ended by cancellation",
                    session_id=self.session.session_id,
                    reason=self.session.cancel_reason,
                    elapsed_ms=self._elapsed_ms(),
                )
            await self.emitter.emit(terminal)
        finally:
            self.keepalive.stop()
            if self._fast_plan is not None:
                await self._fast_plan.cancel()
            self.deadline.stop()
            await self.deadline.drain()
            log_service.log_stream_step(
                self.session.session_id,
                "session",
                terminal.type.value if terminal is not None else "aborted",
                {
                    "elapsed_ms": self._elapsed_ms(),
                    "answer_chars": len(self.answer),
                    "tool_calls": self.accumulator.snapshot(),
                    "pings": self.keepalive.pings_sent,
                },
            )
            self.accumulator.reset()
            await self.emitter.close()
            self._schedule_accounting()

    async def stream(self) -> AsyncIterator[str]:
        """Run the session in the background and yield channel payloads."""
        self.deps.background.spawn(self.run(), name=f"chat:{self.session.session_id}")
        try:
            async for payload in self.channel:
                yield payload
        finally:
            if not self.emitter.closed:
                self.disconnect()

    def disconnect(self) -> None:
        """Client went away: stop writing and cancel upstream work."""
        self.emitter.mark_disconnected()
        self.keepalive.stop()
        self.deadline.cancel(CLIENT_DISCONNECT)

    async def discard(self) -> None:
        """Tear down a session whose primary never connected."""
        self.deadline.cancel(CONNECT_FAILED)
        self.keepalive.stop()
        if self._fast_plan is not None:
            await self._fast_plan.cancel()
        self.deadline.stop()
        await self.deadline.drain()
        await self.emitter.close()

    # --- Preparation helpers ---

    async def _fetch_user_context(self) -> UserContext:
        try:
            return await self.deps.user_context.fetch_user_context(self.user.id)
        except Exception as e:
            log_service.logger.warning(f"User context unavailable for {self.user.id}: {e}")
            return UserContext()

    async def _subject_snapshot(self, subject: str) -> tuple[str, str] | None:
        if not subject:
            return None
        try:
            snapshot = await self.deps.user_context.get_subject_snapshot(self.user.id, subject)
        except Exception as e:
            log_service.logger.warning(f"Subject snapshot failed for {subject}: {e}")
            return None
        return (subject, snapshot) if snapshot else None

    async def _resolve_subject(self, subject: str) -> ResolvedSubject | None:
        if not subject:
            return None
        await self.emitter.emit(
            streaming.reasoning_progress(render_prompt("progress.interpreting", subject=subject))
        )
        resolver = SubjectResolver(
            self.deps.provider,
            model=self.settings.utility_model,
            timeout_seconds=self.settings.subject_resolution_timeout_seconds,
        )
        resolved = await resolver.resolve(
            subject, self.user_context.plan_summary(), self.deadline.token
        )
        if resolved is None:
            log_service.log_stream_step(
                self.session.session_id, "subject_resolution", "failed", {"subject": subject}
            )
            return None
        await self.emitter.emit(
            streaming.reasoning_progress(
                render_prompt(
                    "progress.proceeding",
                    name=resolved.name,
                    details=subject_details(resolved.industry, resolved.website),
                )
            )
        )
        return resolved

    def _preview_line(self) -> str:
        summary = " ".join(self.user_context.plan_summary().split())
        if not summary:
            return render_prompt("progress.preview_default")
        if len(summary) > 160:
            summary = summary[:160] + "…"
        return render_prompt("progress.preview_context", summary=summary)

    def _fast_plan_eligible(self) -> bool:
        intent = self.intent
        config = self.request.config
        return bool(
            intent
            and intent.is_research
            and self.settings.fast_plan_enabled
            and not config.disable_fast_plan
            and not config.fast_mode
        )

    def _start_fast_plan(self, message: str) -> None:
        self._fast_plan = FastPlanCoordinator(
            self.deps.provider,
            self.emitter,
            self.deadline,
            started_at=self._started,
            clock=self._clock,
        )
        self._fast_plan.start(
            build_plan_request(
                model=self.settings.plan_model,
                mode=self.intent.mode,
                message=message,
                user_context=self.user_context,
            )
        )

    async def _static_acknowledgment(self, message: str) -> None:
        mode = self.intent.mode
        if mode in (ResearchMode.DEEP, ResearchMode.QUICK, ResearchMode.SPECIFIC):
            key = mode.value
        elif self.intent.is_research:
            key = "research"
        elif message.strip():
            key = "general"
        else:
            return
        await self.emitter.emit(streaming.acknowledgment(render_prompt(f"acknowledgments.{key}")))

    def _output_budget(self) -> int | None:
        if self.intent.mode == ResearchMode.DEEP:
            return None
        if self.request.config.fast_mode:
            return self.settings.max_output_tokens_fast
        if self.intent.mode == ResearchMode.QUICK:
            return self.settings.max_output_tokens_quick
        return None

    async def _connect(self, request: GenerationRequest) -> None:
        try:
            self._subscription = await open_subscription(
                self.deps.provider, request, self.deadline
            )
        except UpstreamCancelled:
            # The deadline fired during preparation; run() reports the timeout.
            self._subscription = None
        except UpstreamConnectError as e:
            log_service.log_llm_call(
                model=request.model,
                caller=request.role.value,
                status="connect_failed",
                error=str(e),
                session_id=self.session.session_id,
            )
            raise

    async def _connect_summarization(self, source: str, message: str) -> None:
        self._summarizing = True
        request = build_summarization_request(
            model=self.settings.utility_model,
            source=source,
            request_text=message,
            chat_id=self.request.chat_id,
        )
        try:
            await self._connect(request)
        except UpstreamConnectError:
            # Secondary path: reported in-stream by run(), never as an HTTP error.
            self._subscription = None

    # --- Streaming ---

    async def _stream(self) -> NormalizedEvent:
        if self._subscription is None:
            if self.deadline.cancelled:
                return streaming.timeout()
            if self._summarizing:
                return await self._summary_failed("connect failed")
            return streaming.error("Upstream stream unavailable")

        terminal = await self._consume(self._subscription)
        if self._summarizing and terminal.type == EventType.ERROR:
            return await self._summary_failed(terminal.data.get("error", ""))
        return terminal

    async def _summary_failed(self, reason: str) -> NormalizedEvent:
        log_service.log_stream_step(
            self.session.session_id, "summarization", "failed", {"error": reason}
        )
        await self.emitter.emit(
            streaming.reasoning_progress(render_prompt("progress.summary_failed"))
        )
        return streaming.done(self._response_id)

    async def _consume(self, subscription: UpstreamSubscription) -> NormalizedEvent:
        try:
            async with aclosing(subscription.events()) as events:
                async for event in events:
                    terminal = await self._dispatch(event)
                    if terminal is not None:
                        return terminal
        except UpstreamCancelled:
            return streaming.timeout()
        except Exception as e:
            log_service.logger.exception(
                f"Primary stream failed for session {self.session.session_id}"
            )
            return streaming.error(str(e) or "Streaming failed")

        if self.deadline.cancelled:
            return streaming.timeout()
        return streaming.error("Upstream stream ended without completion")

    async def _dispatch(self, event: ProviderEvent) -> NormalizedEvent | None:
        kind = event.kind
        if kind == ProviderEventKind.RESPONSE_CREATED:
            self._response_id = event.response_id
            await self.emitter.emit(
                streaming.meta(
                    stage="primary",
                    event="response_created",
                    response_id=event.response_id,
                    model=self.session.model,
                )
            )
        elif kind == ProviderEventKind.REASONING_DELTA:
            await self._on_reasoning(event.text)
        elif kind == ProviderEventKind.OUTPUT_TEXT_DELTA:
            await self._emit_content(event.text)
        elif kind == ProviderEventKind.TOOL_CALL_STARTED:
            self.accumulator.start(event.call_id, event.name)
        elif kind == ProviderEventKind.TOOL_ARGS_DELTA:
            self.accumulator.append(
                event.call_id, name=event.name, arguments=event.arguments or ""
            )
        elif kind == ProviderEventKind.TOOL_CALL_DONE:
            outcome = await self.deadline.token.race(
                self.accumulator.complete(
                    event.call_id, name=event.name, arguments=event.arguments
                )
            )
            for tool_event in outcome.events:
                await self.emitter.emit(tool_event)
            if outcome.confirmation:
                await self._emit_content(outcome.confirmation)
        elif kind == ProviderEventKind.WEB_SEARCH:
            await self.emitter.emit(
                streaming.web_search(
                    event.query, list(event.sources)[: self.settings.web_search_max_sources]
                )
            )
        elif kind == ProviderEventKind.COMPLETED:
            self._completed = True
            self._usage_tokens = event.usage_tokens
            self._response_id = event.response_id or self._response_id
            await self._flush_reasoning()
            return streaming.done(self._response_id)
        elif kind == ProviderEventKind.FAILED:
            return streaming.error(event.error or "Upstream generation failed")
        return None

    async def _on_reasoning(self, text: str) -> None:
        if self._reasoning_started_at is None:
            self._reasoning_started_at = self._clock()
            await self.emitter.emit(
                streaming.meta(stage="primary", event="reasoning_start", elapsed_ms=self._elapsed_ms())
            )
        if self._coalescer is None:
            await self.emitter.emit(streaming.reasoning(text))
            return
        compact = self._coalescer.add(text)
        if compact:
            await self.emitter.emit(streaming.reasoning(compact))

    async def _flush_reasoning(self) -> None:
        if self._coalescer is None:
            return
        compact = self._coalescer.flush()
        if compact:
            await self.emitter.emit(streaming.reasoning(compact))

    async def _emit_content(self, text: str) -> None:
        if not text:
            return
        if self._first_content_at is None:
            self.keepalive.stop()
            self._first_content_at = self._clock()
            reasoning_to_content = (
                int((self._first_content_at - self._reasoning_started_at) * 1000)
                if self._reasoning_started_at is not None
                else None
            )
            await self.emitter.emit(
                streaming.meta(
                    stage="primary",
                    event="first_delta",
                    ttfb_ms=self._elapsed_ms(),
                    reasoning_to_content_ms=reasoning_to_content,
                )
            )
        self._answer_parts.append(text)
        await self.emitter.emit(streaming.content(text))

    # --- Accounting ---

    def _schedule_accounting(self) -> None:
        if self._accounted:
            return
        self._accounted = True
        if not self._completed and not self.settings.charge_incomplete_sessions:
            log_service.log_event(
                event_type="accounting_skipped",
                message="Session did not complete; usage not charged",
                session_id=self.session.session_id,
                reason=self.session.cancel_reason,
            )
            return
        accountant = UsageAccountant(
            self.deps.ledger,
            self.deps.provider,
            summary_model=self.settings.utility_model,
            rolling_summary_enabled=self.settings.rolling_summary_enabled,
        )
        record = UsageRecord(
            user_id=self.user.id,
            model=self.session.model,
            messages=list(self.request.messages),
            answer=self.answer,
            chat_id=self.request.chat_id,
            mode=self.session.mode.value,
            response_id=self._response_id,
            usage_tokens=self._usage_tokens,
        )
        self.deps.background.spawn(
            accountant.record(record), name=f"accounting:{self.session.session_id}"
        )
