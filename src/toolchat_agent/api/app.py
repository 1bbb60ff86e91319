"""
FastAPI application factory.

Manages the lifecycle of:
- Session store (in-memory or SQL) and its expiry sweeper
- Agent and the turn runner shared by all transports
"""

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..agent import Agent, BaseSessionStore, create_session_store
from ..config import Settings, get_settings
from ..log_config import configure_logging
from . import sse, websocket
from .errors import ApiError, register_error_handlers
from .turns import TurnRunner

logger = structlog.get_logger()

VERSION = __version__


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``."""

    model_config = ConfigDict(populate_by_name=True)

    message: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    enable_tools: bool = Field(default=True, alias="enableTools")
    mode: str = "agent"


class ClearRequest(BaseModel):
    """Body of ``POST /api/chat/clear``."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")


def _state(request: Request):
    return request.app.state


def create_app(
    settings: Settings | None = None,
    agent: Agent | None = None,
    store: BaseSessionStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``agent`` and ``store`` are built from settings when not supplied.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if not structlog.is_configured():
            configure_logging(settings.log_level, json=settings.log_json)

        session_store = store or await create_session_store(settings)
        chat_agent = agent or Agent(settings=settings)
        runner = TurnRunner(
            chat_agent,
            session_store,
            record_annotations=settings.record_tool_annotations,
        )

        app.state.settings = settings
        app.state.store = session_store
        app.state.agent = chat_agent
        app.state.runner = runner
        app.state.started_at = time.monotonic()

        sweeper = asyncio.create_task(
            session_store.run_sweeper(settings.session_sweep_interval_minutes * 60)
        )
        logger.info(
            "Application started",
            session_backend=settings.session_backend,
            tools=chat_agent.get_available_tools(),
        )

        yield

        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

        await runner.aclose()

        if store is None:
            await session_store.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Streaming chat agent with tool calling over WebSocket, SSE and REST",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(websocket.router)
    app.include_router(sse.router)

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #
    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        state = _state(request)
        sessions = await state.store.list_sessions()
        return {
            "status": "ok",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": time.monotonic() - state.started_at,
            "llm_configured": bool(state.settings.openai_api_key),
            "session_backend": state.settings.session_backend,
            "sessions": {
                "active": len(sessions),
                "total": sum(len(s.messages) for s in sessions),
            },
        }

    # ------------------------------------------------------------------ #
    # Chat
    # ------------------------------------------------------------------ #
    @app.post("/api/chat")
    async def chat(request: Request, body: ChatRequest):
        """Run one turn and return the complete answer."""
        if not body.message:
            raise ApiError(400, "MISSING_MESSAGE", "Message is required")

        state = _state(request)
        reply = await state.runner.run_turn(
            body.session_id,
            body.message,
            enable_tools=body.enable_tools,
        )
        return {
            "sessionId": reply.session_id,
            "message": reply.content,
            "mode": body.mode,
            "tools": state.agent.get_available_tools(body.enable_tools),
            "history": reply.history_length,
        }

    @app.get("/api/chat/sessions/{session_id}")
    async def get_chat_session(request: Request, session_id: str):
        """Get a session's stored history."""
        session = await _state(request).store.get_session(session_id)
        if session is None:
            raise ApiError(404, "SESSION_NOT_FOUND", f"Session {session_id} not found")

        data = session.to_dict()
        return {
            "sessionId": session.id,
            "messages": data["messages"],
            "createdAt": data["createdAt"],
            "lastActivity": data["lastActivity"],
            "messageCount": data["messageCount"],
        }

    @app.delete("/api/chat/sessions/{session_id}")
    async def clear_chat_session(request: Request, session_id: str):
        """Clear a session's history, keeping the session."""
        if not await _state(request).store.clear_messages(session_id):
            raise ApiError(404, "SESSION_NOT_FOUND", f"Session {session_id} not found")
        return {"success": True, "sessionId": session_id, "message": "Session cleared"}

    @app.post("/api/chat/clear")
    async def clear_chat(request: Request, body: ClearRequest):
        """Clear a session given in the body."""
        if not body.session_id:
            raise ApiError(400, "MISSING_SESSION_ID", "Session ID is required")
        await _state(request).store.clear_messages(body.session_id)
        return {"success": True, "sessionId": body.session_id, "message": "Chat history cleared"}

    @app.get("/api/chat/history")
    async def chat_history(request: Request, session_id: str | None = Query(None, alias="sessionId")):
        """Summaries of the caller's sessions."""
        if not session_id:
            return []
        session = await _state(request).store.get_session(session_id)
        if session is None:
            return []

        last = session.messages[-1].content if session.messages else None
        return [{
            "id": session.id,
            "timestamp": session.last_activity.isoformat(),
            "messageCount": len(session.messages),
            "preview": (last or "")[:100] if session.messages else "No messages",
        }]

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #
    @app.get("/api/sessions")
    async def list_sessions(request: Request):
        """List stored sessions."""
        sessions = await _state(request).store.list_sessions()
        return {
            "sessions": [
                {
                    "sessionId": s.id,
                    "messageCount": len(s.messages),
                    "createdAt": s.created_at.isoformat(),
                    "lastActivity": s.last_activity.isoformat(),
                }
                for s in sessions
            ],
            "count": len(sessions),
        }

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(request: Request, session_id: str):
        """Delete a session and its history."""
        if not await _state(request).store.delete_session(session_id):
            raise ApiError(404, "SESSION_NOT_FOUND", f"Session {session_id} not found")
        return {"success": True, "sessionId": session_id, "message": "Session deleted"}

    # ------------------------------------------------------------------ #
    # Tools
    # ------------------------------------------------------------------ #
    @app.get("/api/tools")
    async def list_tools(request: Request):
        """List registered tools."""
        specs = _state(request).agent.tool_registry.list()
        return {
            "tools": [
                {"name": s.name, "description": s.description, "parameters": s.parameters}
                for s in specs
            ],
            "count": len(specs),
        }

    @app.get("/api/tools/stats")
    async def tool_stats(request: Request):
        """Tool usage statistics."""
        return {"stats": await _state(request).store.get_tool_stats()}

    @app.get("/api/tools/sessions/{session_id}")
    async def session_tools(request: Request, session_id: str):
        """Tool executions recorded for a session."""
        usage = await _state(request).store.get_session_tools(session_id)
        return {"sessionId": session_id, "usage": usage, "count": len(usage)}

    return app
