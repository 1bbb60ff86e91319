"""
WebSocket transport.

One connection is one client bound to a session id (from the ``sessionId``
query parameter, or generated). The stored history is replayed as a single
``history`` frame right after the ``connection`` frame, so a client that
reconnects with its previous id resumes where it left off.

Inbound frames::

    {"type": "chat", "message": "...", "sessionId"?: "...", "enableTools"?: true}
    {"type": "clear" | "getHistory" | "reconnect", "sessionId"?: "..."}
    {"type": "ping"}
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..agent import (
    BaseSessionStore,
    ClientMetadata,
    TokenEvent,
    ToolCallEvent,
    ToolProgressUpdate,
    ToolResultEvent,
)
from ..agent.events import AgentStreamEvent
from .turns import Turn, TurnRunner

logger = structlog.get_logger()

router = APIRouter(tags=["websocket"])

FRAME_TYPES = ("chat", "clear", "getHistory", "ping", "reconnect")


class InboundFrame(BaseModel):
    """A frame sent by the client."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["chat", "clear", "getHistory", "ping", "reconnect"]
    session_id: str | None = Field(default=None, alias="sessionId")
    message: str | None = None
    enable_tools: bool = Field(default=True, alias="enableTools")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def event_to_frame(event: AgentStreamEvent, session_id: str) -> dict[str, Any]:
    """Translate an agent event into an outbound frame."""
    if isinstance(event, TokenEvent):
        frame: dict[str, Any] = {"type": "token", "content": event.content}
    elif isinstance(event, ToolCallEvent):
        frame = {"type": "tool_call", "id": uuid4().hex, "tool": event.name, "args": event.args}
    elif isinstance(event, ToolProgressUpdate):
        frame = {"type": "tool_progress", "id": uuid4().hex, "tool": event.name, "content": event.message}
    elif isinstance(event, ToolResultEvent):
        frame = {
            "type": "tool_result",
            "id": uuid4().hex,
            "tool": event.name,
            "result": event.result,
            "success": event.success,
        }
    else:
        raise TypeError(f"Unsupported event: {event!r}")

    frame["sessionId"] = session_id
    return frame


class ChatConnection:
    """State of one WebSocket client."""

    def __init__(
        self,
        websocket: WebSocket,
        runner: TurnRunner,
        store: BaseSessionStore,
        session_id: str,
        metadata: ClientMetadata,
    ):
        self.websocket = websocket
        self.runner = runner
        self.store = store
        self.session_id = session_id
        self.metadata = metadata
        self.closed = False
        self._send_lock = asyncio.Lock()
        self._relays: set[asyncio.Task] = set()

    async def send(self, frame: dict[str, Any]) -> None:
        if self.closed:
            return
        frame.setdefault("timestamp", _timestamp())
        async with self._send_lock:
            try:
                await self.websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError) as e:
                # Client is gone; in-flight turns keep running.
                self.closed = True
                logger.debug("Dropped frame for closed connection", session_id=self.session_id, error=str(e))

    async def send_error(self, error: str) -> None:
        await self.send({"type": "error", "error": error})

    async def send_history(self, session_id: str) -> None:
        session = await self.store.get_session(session_id)
        messages = session.visible_messages() if session else []
        await self.send({
            "type": "history",
            "sessionId": session_id,
            "history": [m.to_dict() for m in messages],
        })

    async def receive(self) -> str | None:
        """Next inbound frame as text, or None for an undecodable binary frame."""
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

        if message.get("text") is not None:
            return message["text"]
        try:
            return (message.get("bytes") or b"").decode("utf-8")
        except UnicodeDecodeError:
            return None

    async def dispatch(self, raw: str | None) -> None:
        if raw is None:
            await self.send_error("Invalid message format")
            return

        try:
            await self.handle_raw(raw)
        except Exception as e:
            logger.error("WebSocket frame failed", session_id=self.session_id, error=str(e))
            await self.send_error(str(e) or "Failed to process message")

    async def handle_raw(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_error("Invalid message format")
            return

        if not isinstance(data, dict):
            await self.send_error("Invalid message format")
            return

        try:
            frame = InboundFrame.model_validate(data)
        except ValidationError:
            frame_type = data.get("type")
            if isinstance(frame_type, str) and frame_type not in FRAME_TYPES:
                await self.send_error(f"Unknown message type: {frame_type}")
            else:
                await self.send_error("Invalid message format")
            return

        await self.handle(frame)

    async def handle(self, frame: InboundFrame) -> None:
        logger.debug("WebSocket frame", session_id=self.session_id, frame_type=frame.type)

        if frame.type == "chat":
            await self._chat(frame)
        elif frame.type == "clear":
            session_id = frame.session_id or self.session_id
            await self.store.clear_messages(session_id)
            await self.send({"type": "clear", "sessionId": session_id, "content": "Chat history cleared"})
        elif frame.type == "getHistory":
            await self.send_history(frame.session_id or self.session_id)
        elif frame.type == "reconnect":
            if not frame.session_id:
                await self.send_error("Session ID is required")
                return
            self.session_id = frame.session_id
            logger.info("WebSocket session rebound", session_id=self.session_id)
            await self.send_history(self.session_id)
        elif frame.type == "ping":
            await self.send({"type": "pong"})

    async def _chat(self, frame: InboundFrame) -> None:
        if not frame.message:
            await self.send_error("Message content is required")
            return

        if frame.session_id:
            self.session_id = frame.session_id
        session_id = self.session_id

        await self.send({"type": "message", "sessionId": session_id, "content": f"Using session: {session_id}"})

        turn = self.runner.start_turn(
            session_id,
            frame.message,
            enable_tools=frame.enable_tools,
            metadata=self.metadata,
        )
        relay = asyncio.create_task(self._relay(turn))
        self._relays.add(relay)
        relay.add_done_callback(self._relays.discard)

    async def _relay(self, turn: Turn) -> None:
        try:
            async for event in turn:
                await self.send(event_to_frame(event, turn.session_id))
        except Exception as e:
            logger.error("WebSocket chat error", session_id=turn.session_id, error=str(e))
            await self.send_error(str(e) or "Failed to process chat message")

    def detach(self) -> None:
        """Stop relaying; the turns themselves keep running."""
        self.closed = True
        for relay in list(self._relays):
            relay.cancel()


@router.websocket("/ws")
async def websocket_chat(
    websocket: WebSocket,
    session_id: str | None = Query(None, alias="sessionId"),
    tz: str | None = Query(None),
    locale: str | None = Query(None),
):
    """Streaming chat over WebSocket."""
    state = websocket.app.state
    settings = state.settings

    await websocket.accept()

    connection = ChatConnection(
        websocket=websocket,
        runner=state.runner,
        store=state.store,
        session_id=session_id or str(uuid4()),
        metadata=ClientMetadata(
            timezone=tz or settings.default_timezone,
            locale=locale or settings.default_locale,
        ),
    )
    logger.info(
        "WebSocket connected",
        session_id=connection.session_id,
        timezone=connection.metadata.timezone,
        locale=connection.metadata.locale,
    )

    await connection.send({
        "type": "connection",
        "sessionId": connection.session_id,
        "content": "Connected to ChatBot WebSocket server",
    })
    await connection.send_history(connection.session_id)

    try:
        while True:
            await connection.dispatch(await connection.receive())
    except WebSocketDisconnect as e:
        logger.info("WebSocket disconnected", session_id=connection.session_id, code=e.code)
    finally:
        connection.detach()
