"""
Agent module - the conversational core.

Includes:
- Agent: Runs turns against the completion provider and tools
- ConversationHistory: Append-only conversation log and replay filter
- Session stores: In-memory and SQL-backed session persistence
"""

from .core import (
    Agent,
    ClientMetadata,
    ToolCallAccumulator,
    TurnState,
    enrich_tool_arguments,
)
from .events import (
    AgentStreamEvent,
    TokenEvent,
    ToolCallEvent,
    ToolProgressUpdate,
    ToolResultEvent,
)
from .history import (
    ConversationEntry,
    ConversationHistory,
    MessageRole,
    filter_for_replay,
    is_ui_annotation,
)
from .session import (
    BaseSessionStore,
    InMemorySessionStore,
    SQLSessionStore,
    Session,
    SessionNotFoundError,
    create_session_store,
)

__all__ = [
    "Agent",
    "ClientMetadata",
    "ToolCallAccumulator",
    "TurnState",
    "enrich_tool_arguments",
    "AgentStreamEvent",
    "TokenEvent",
    "ToolCallEvent",
    "ToolProgressUpdate",
    "ToolResultEvent",
    "ConversationEntry",
    "ConversationHistory",
    "MessageRole",
    "filter_for_replay",
    "is_ui_annotation",
    "BaseSessionStore",
    "InMemorySessionStore",
    "SQLSessionStore",
    "Session",
    "SessionNotFoundError",
    "create_session_store",
]
