"""OpenAI Responses API client factory, provider adapter and the ingestion
boundary that turns raw stream events into canonical ``ProviderEvent``s."""
from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from research_chat.config import Settings, settings
from research_chat.errors import UpstreamCancelled, UpstreamConnectError
from research_chat.models.events import ProviderEvent, ProviderEventKind
from research_chat.models.session import ReasoningEffort, SubscriptionRole
from research_chat.services import logger as log_service
from research_chat.services.deadline import DeadlineController


@dataclass
class GenerationRequest:
    role: SubscriptionRole
    model: str
    instructions: str
    input: str | list[dict[str, Any]]
    reasoning_effort: ReasoningEffort | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    include: list[str] = field(default_factory=list)
    max_output_tokens: int | None = None
    store: bool = False
    verbosity: str = "low"
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "instructions": self.instructions,
            "input": self.input,
            "text": {"format": {"type": "text"}, "verbosity": self.verbosity},
            "store": self.store,
            "metadata": _clean_metadata({"stage": self.role.value, **self.metadata}),
        }
        if self.reasoning_effort is not None:
            kwargs["reasoning"] = {"effort": self.reasoning_effort.value}
        if self.tools:
            kwargs["tools"] = self.tools
            kwargs["parallel_tool_calls"] = True
        if self.include:
            kwargs["include"] = self.include
        if self.max_output_tokens:
            kwargs["max_output_tokens"] = self.max_output_tokens
        return kwargs


def _clean_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    # Responses API metadata values must be short strings.
    return {k: str(v)[:512] for k, v in metadata.items() if v is not None}


class ResponsesProvider(Protocol):
    async def open_stream(self, request: GenerationRequest) -> Any: ...

    async def complete(self, request: GenerationRequest) -> str: ...


class OpenAIResponsesAdapter:
    """Thin adapter over ``AsyncOpenAI.responses``."""

    def __init__(self, openai_client: Any):
        self._client = openai_client

    async def open_stream(self, request: GenerationRequest) -> Any:
        return await self._client.responses.create(stream=True, **request.to_kwargs())

    async def complete(self, request: GenerationRequest) -> str:
        response = await self._client.responses.create(**request.to_kwargs())
        return getattr(response, "output_text", "") or ""

    async def aclose(self) -> None:
        await self._client.close()


def get_client(config: Settings | None = None) -> OpenAIResponsesAdapter:
    """Build the Responses adapter via the OpenAI SDK."""
    from openai import AsyncOpenAI

    cfg = config or settings
    openai_client = AsyncOpenAI(
        api_key=cfg.openai_api_key,
        base_url=cfg.openai_base_url.strip() or None,
        project=cfg.openai_project.strip() or None,
    )
    return OpenAIResponsesAdapter(openai_client)


# --- Ingestion boundary ---


REASONING_DELTA_TYPES = frozenset(
    {
        "response.reasoning_summary_text.delta",
        "response.reasoning_text.delta",
        "response.reasoning.delta",
    }
)
TOOL_DONE_TYPES = frozenset(
    {"response.function_call_arguments.done", "response.function_call.done"}
)
COMPLETED_TYPES = frozenset({"response.completed", "response.incomplete"})
FAILED_TYPES = frozenset({"response.failed", "error"})


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _call_id(raw: Any) -> str | None:
    # The SDK keys argument deltas by item_id; older shapes use call_id.
    return _get(raw, "item_id") or _get(raw, "call_id")


def _source_urls(results: Any) -> tuple[str, ...]:
    if not isinstance(results, (list, tuple)):
        return ()
    urls: list[str] = []
    for item in results:
        if isinstance(item, str):
            url = item
        else:
            url = _get(item, "url") or _get(item, "link") or _get(item, "source_url")
        if url:
            urls.append(str(url))
    return tuple(urls)


def _usage_tokens(response: Any) -> int | None:
    usage = _get(response, "usage")
    if usage is None:
        return None
    total = _get(usage, "total_tokens")
    if total is not None:
        return int(total)
    return int(_get(usage, "input_tokens", 0) or 0) + int(_get(usage, "output_tokens", 0) or 0)


def normalize_provider_event(raw: Any) -> ProviderEvent | None:
    """Map one raw Responses stream event to a canonical event.

    Returns None for bookkeeping events the orchestrator does not act on.
    """
    etype = str(_get(raw, "type") or "")

    if etype in ("response.created", "response.in_progress"):
        response_id = _get(_get(raw, "response"), "id")
        if not response_id:
            return None
        return ProviderEvent(
            ProviderEventKind.RESPONSE_CREATED, response_id=response_id, raw_type=etype
        )

    if etype in REASONING_DELTA_TYPES:
        delta = _get(raw, "delta") or ""
        if not delta:
            return None
        return ProviderEvent(ProviderEventKind.REASONING_DELTA, text=delta, raw_type=etype)

    if etype == "response.output_text.delta":
        delta = _get(raw, "delta") or ""
        if not delta:
            return None
        return ProviderEvent(ProviderEventKind.OUTPUT_TEXT_DELTA, text=delta, raw_type=etype)

    if etype in ("response.output_item.added", "response.output_item.done"):
        item = _get(raw, "item")
        item_type = _get(item, "type")
        if item_type == "function_call" and etype == "response.output_item.added":
            return ProviderEvent(
                ProviderEventKind.TOOL_CALL_STARTED,
                call_id=_get(item, "id") or _get(item, "call_id"),
                name=_get(item, "name") or "",
                raw_type=etype,
            )
        if item_type == "web_search_call" and etype == "response.output_item.done":
            action = _get(item, "action")
            query = _get(action, "query") or ""
            sources = _source_urls(_get(action, "sources"))
            if not query and not sources:
                return None
            return ProviderEvent(
                ProviderEventKind.WEB_SEARCH, query=query, sources=sources, raw_type=etype
            )
        return None

    if etype == "response.function_call_arguments.delta":
        return ProviderEvent(
            ProviderEventKind.TOOL_ARGS_DELTA,
            call_id=_call_id(raw),
            arguments=_get(raw, "delta") or _get(raw, "arguments_delta") or "",
            raw_type=etype,
        )

    if etype == "response.function_call.delta":
        return ProviderEvent(
            ProviderEventKind.TOOL_ARGS_DELTA,
            call_id=_call_id(raw),
            name=_get(raw, "name_delta") or "",
            arguments=_get(raw, "arguments_delta") or "",
            raw_type=etype,
        )

    if etype in TOOL_DONE_TYPES:
        arguments = _get(raw, "arguments")
        return ProviderEvent(
            ProviderEventKind.TOOL_CALL_DONE,
            call_id=_call_id(raw),
            name=_get(raw, "name") or "",
            arguments=arguments if isinstance(arguments, str) else None,
            raw_type=etype,
        )

    if etype.startswith("response.web_search_call"):
        payload = _get(raw, "web_search_call")
        if payload is None:
            return None
        query = _get(payload, "query") or ""
        sources = _source_urls(_get(payload, "results"))
        return ProviderEvent(
            ProviderEventKind.WEB_SEARCH, query=query, sources=sources, raw_type=etype
        )

    if etype in COMPLETED_TYPES:
        response = _get(raw, "response")
        return ProviderEvent(
            ProviderEventKind.COMPLETED,
            response_id=_get(response, "id") or _get(raw, "id"),
            usage_tokens=_usage_tokens(response),
            raw_type=etype,
        )

    if etype in FAILED_TYPES:
        message = (
            _get(_get(_get(raw, "response"), "error"), "message")
            or _get(raw, "message")
            or "Upstream generation failed"
        )
        return ProviderEvent(ProviderEventKind.FAILED, error=str(message), raw_type=etype)

    return None


# --- Subscriptions ---


async def _next(iterator: Any) -> Any:
    return await iterator.__anext__()


class UpstreamSubscription:
    """One cancellable upstream generation stream.

    Iterating ``events()`` yields canonical events until the provider ends the
    stream; raises UpstreamCancelled as soon as the shared token fires.
    """

    def __init__(
        self,
        role: SubscriptionRole,
        source: Any,
        deadline: DeadlineController,
        *,
        model: str = "",
        grace_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.role = role
        self.model = model
        self.aborted = False
        self.first_delta_at: float | None = None
        self.response_id: str | None = None
        self.usage_tokens: int | None = None
        self._source = source
        self._deadline = deadline
        self._token = deadline.token
        self._grace = deadline.grace_seconds if grace_seconds is None else grace_seconds
        self._clock = clock
        self._opened_at = clock()
        self._consuming = False
        self._closed = False
        self._close_task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def abort(self) -> None:
        if self.aborted:
            return
        self.aborted = True
        if self._consuming:
            # The consuming loop observes the token and closes on its way out.
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._close_task = loop.create_task(self.close())

    async def events(self) -> AsyncIterator[ProviderEvent]:
        iterator = self._source.__aiter__()
        self._consuming = True
        try:
            while True:
                try:
                    raw = await self._token.race(_next(iterator))
                except StopAsyncIteration:
                    return
                event = normalize_provider_event(raw)
                if event is None:
                    continue
                self._observe(event)
                yield event
        finally:
            self._consuming = False
            await self.close()

    def _observe(self, event: ProviderEvent) -> None:
        if self.first_delta_at is None and event.kind in (
            ProviderEventKind.OUTPUT_TEXT_DELTA,
            ProviderEventKind.REASONING_DELTA,
        ):
            self.first_delta_at = self._clock()
        if event.response_id and not self.response_id:
            self.response_id = event.response_id
        if event.kind == ProviderEventKind.COMPLETED:
            self.usage_tokens = event.usage_tokens

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._deadline.unregister(self)
        closer = getattr(self._source, "close", None) or getattr(self._source, "aclose", None)
        status = "aborted" if self.aborted else "success"
        if closer is not None:
            try:
                result = closer()
                if inspect.isawaitable(result):
                    await asyncio.wait_for(result, timeout=self._grace)
            except asyncio.TimeoutError:
                status = "close_timeout"
                log_service.logger.warning(
                    f"{self.role.value} subscription did not close within {self._grace}s"
                )
            except RuntimeError as e:
                # Async generators refuse aclose() while another task is inside them.
                log_service.logger.debug(f"{self.role.value} subscription close skipped: {e}")
        log_service.log_llm_call(
            model=self.model,
            caller=self.role.value,
            output_tokens=self.usage_tokens or 0,
            duration_ms=int((self._clock() - self._opened_at) * 1000),
            status=status,
        )


async def open_subscription(
    provider: ResponsesProvider,
    request: GenerationRequest,
    deadline: DeadlineController,
) -> UpstreamSubscription:
    """Connect one upstream stream under the session's cancellation token."""
    try:
        source = await deadline.token.race(provider.open_stream(request))
    except UpstreamCancelled:
        raise
    except Exception as e:
        raise UpstreamConnectError(f"{request.role.value} connect failed: {e}") from e
    subscription = UpstreamSubscription(request.role, source, deadline, model=request.model)
    deadline.register(subscription)
    return subscription
