from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from research_chat.agents.orchestrator import StreamOrchestrator
from research_chat.api.deps import get_current_user, get_dependencies
from research_chat.dependencies import ChatDependencies
from research_chat.errors import UpstreamConnectError
from research_chat.models.schemas import ChatRequest, ErrorResponse
from research_chat.models.session import AuthenticatedUser
from research_chat.services import logger as log_service

router = APIRouter(prefix="/api/chat", tags=["chat"])

SSE_HEADERS = {"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"}


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True)
    )


@router.post("")
async def chat(
    body: ChatRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    deps: ChatDependencies = Depends(get_dependencies),
):
    """Stream one answer as ``data: <json>`` records ending in ``data: [DONE]``."""
    if not body.messages:
        raise HTTPException(status_code=400, detail="No messages provided")

    credits = await deps.ledger.check_credits(user.id)
    if not credits.has_credits:
        return _error(
            403,
            ErrorResponse(
                error=credits.message or "No credits remaining",
                needs_approval=credits.needs_approval,
                remaining=credits.remaining,
            ),
        )

    orchestrator = StreamOrchestrator(body, user, deps)
    try:
        await orchestrator.prepare()
    except UpstreamConnectError as e:
        await orchestrator.discard()
        return _error(502, ErrorResponse(error=str(e)))

    log_service.log_event(
        event_type="chat_stream_started",
        message="Streaming chat response",
        session_id=orchestrator.session.session_id,
        user_id=user.id,
        mode=orchestrator.session.mode.value,
    )

    async def event_generator():
        async for payload in orchestrator.stream():
            yield {"data": payload}

    # The protocol carries its own heartbeat; keep the transport ping out of the deadline window.
    transport_ping = int(deps.settings.streaming_deadline_ceiling_seconds) + 60
    return EventSourceResponse(
        event_generator(), sep="\n", ping=transport_ping, headers=SSE_HEADERS
    )
