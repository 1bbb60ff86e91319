"""
Server-Sent Events transport: one request runs one turn.
"""

import json
from typing import Any, AsyncIterator
from uuid import uuid4

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..agent import TokenEvent, ToolCallEvent, ToolProgressUpdate, ToolResultEvent
from ..agent.events import AgentStreamEvent
from .turns import TurnRunner

logger = structlog.get_logger()

router = APIRouter(prefix="/api/chat/stream", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamRequest(BaseModel):
    """Body of ``POST /api/chat/stream``."""

    model_config = ConfigDict(populate_by_name=True)

    message: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    enable_tools: bool = Field(default=True, alias="enableTools")


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def event_to_sse(event: AgentStreamEvent) -> str:
    if isinstance(event, TokenEvent):
        return format_sse("token", {"content": event.content})
    if isinstance(event, ToolCallEvent):
        return format_sse("tool_call", {"tool": event.name, "args": event.args})
    if isinstance(event, ToolProgressUpdate):
        return format_sse("tool_progress", {"tool": event.name, "message": event.message})
    if isinstance(event, ToolResultEvent):
        return format_sse("tool_result", {"tool": event.name, "result": event.result})
    raise TypeError(f"Unsupported event: {event!r}")


async def _stream_turn(
    runner: TurnRunner,
    message: str | None,
    session_id: str | None,
    enable_tools: bool,
    missing_message: str,
) -> AsyncIterator[str]:
    if not message:
        yield format_sse("error", {"code": "MISSING_MESSAGE", "message": missing_message})
        return

    turn = runner.start_turn(session_id or str(uuid4()), message, enable_tools=enable_tools)
    try:
        async for event in turn:
            yield event_to_sse(event)
    except Exception as e:
        logger.error("SSE stream error", session_id=turn.session_id, error=str(e))
        yield format_sse("error", {
            "code": "INTERNAL_ERROR",
            "message": str(e) or "An error occurred during streaming",
        })
        return

    yield format_sse("done", {
        "message": "complete",
        "sessionId": turn.session_id,
        "historyLength": turn.history_length,
    })


def _response(stream: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("")
async def stream_chat_get(
    request: Request,
    message: str | None = Query(None),
    session_id: str | None = Query(None, alias="sessionId"),
    enable_tools: bool = Query(True, alias="enableTools"),
):
    """Stream one turn; parameters come from the query string."""
    return _response(_stream_turn(
        request.app.state.runner,
        message,
        session_id,
        enable_tools,
        "Message is required as query parameter",
    ))


@router.post("")
async def stream_chat_post(request: Request, body: StreamRequest):
    """Stream one turn; parameters come from the JSON body."""
    return _response(_stream_turn(
        request.app.state.runner,
        body.message,
        body.session_id,
        body.enable_tools,
        "Message is required",
    ))
