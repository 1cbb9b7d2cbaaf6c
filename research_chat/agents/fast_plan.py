from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from typing import Callable

from research_chat.errors import UpstreamCancelled, UpstreamIncomplete
from research_chat.llm_client import GenerationRequest, ResponsesProvider, open_subscription
from research_chat.models.events import ProviderEventKind
from research_chat.models.session import ReasoningEffort, ResearchMode, SubscriptionRole, UserContext
from research_chat.services import logger as log_service
from research_chat.services import streaming
from research_chat.services.deadline import DeadlineController
from research_chat.services.emitter import NormalizedEventEmitter
from research_chat.services.prompt_store import render_prompt

PLAN_STAGE = "plan"


def build_plan_request(
    *, model: str, mode: ResearchMode, message: str, user_context: UserContext
) -> GenerationRequest:
    context = user_context.plan_summary()[:600] or "No saved profile context yet."
    return GenerationRequest(
        role=SubscriptionRole.FAST_PLAN,
        model=model,
        instructions=render_prompt("fast_plan.instructions"),
        input=render_prompt("fast_plan.input", mode=mode.value, request=message, context=context),
        reasoning_effort=ReasoningEffort.LOW,
        max_output_tokens=300,
    )


class FastPlanCoordinator:
    """Runs the cheap plan generation beside the primary answer.

    The first line becomes an ``acknowledgment``; the rest streams as
    ``reasoning``, both tagged ``stage=plan``. Failures stay local.
    """

    def __init__(
        self,
        provider: ResponsesProvider,
        emitter: NormalizedEventEmitter,
        deadline: DeadlineController,
        *,
        started_at: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._provider = provider
        self._emitter = emitter
        self._deadline = deadline
        self._started_at = started_at
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._ack_buffer = ""
        self._acknowledged = False
        self._first_delta_sent = False
        self.failed = False

    @property
    def acknowledged(self) -> bool:
        return self._acknowledged

    def start(self, request: GenerationRequest) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(request), name="fast_plan")

    async def _run(self, request: GenerationRequest) -> None:
        session_id = self._deadline.session.session_id
        try:
            subscription = await open_subscription(self._provider, request, self._deadline)
            async with aclosing(subscription.events()) as events:
                async for event in events:
                    if event.kind == ProviderEventKind.OUTPUT_TEXT_DELTA:
                        await self._on_text(event.text)
                    elif event.kind == ProviderEventKind.FAILED:
                        raise UpstreamIncomplete(event.error or "plan generation failed")
            await self._flush_acknowledgment()
        except UpstreamCancelled as e:
            log_service.log_stream_step(session_id, "fast_plan", "cancelled", {"reason": e.reason})
        except Exception as e:
            self.failed = True
            log_service.log_stream_step(session_id, "fast_plan", "failed", {"error": str(e)})
            await self._emitter.emit(
                streaming.reasoning_progress(render_prompt("progress.plan_failed"))
            )

    async def _on_text(self, text: str) -> None:
        if not self._first_delta_sent:
            self._first_delta_sent = True
            await self._emitter.emit(
                streaming.meta(
                    stage="fast_plan",
                    event="first_delta",
                    ttfb_ms=int((self._clock() - self._started_at) * 1000),
                )
            )
        if self._acknowledged:
            await self._emitter.emit(streaming.reasoning(text, stage=PLAN_STAGE))
            return

        self._ack_buffer += text
        if "\n" not in self._ack_buffer:
            return
        ack, rest = self._ack_buffer.split("\n", 1)
        self._ack_buffer = ""
        await self._acknowledge(ack)
        if rest.strip():
            await self._emitter.emit(streaming.reasoning(rest.lstrip("\n"), stage=PLAN_STAGE))

    async def _acknowledge(self, text: str) -> None:
        self._acknowledged = True
        if text.strip():
            await self._emitter.emit(streaming.acknowledgment(text.strip(), stage=PLAN_STAGE))

    async def _flush_acknowledgment(self) -> None:
        if not self._acknowledged and self._ack_buffer.strip():
            await self._acknowledge(self._ack_buffer)
            self._ack_buffer = ""

    async def wait(self, timeout: float) -> None:
        """Give the plan up to ``timeout`` seconds to finish, then cancel it."""
        if self._task is None:
            return
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            await self.cancel()

    async def cancel(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
