"""
Conversation history and the replay filter.

The history is an append-only log of entries. What gets sent back to the
completion provider is derived from it by ``filter_for_replay``, which drops
display-only annotations and tool results that no longer line up with the
assistant message that requested them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Protocol, Sequence
from uuid import uuid4

from ..llm.base import LLMMessage, ToolCall


class MessageRole(str, Enum):
    """Message roles for conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


# Markers of UI-only system entries recorded alongside the conversation.
TOOL_CALL_MARKER = "🔧 Calling tool:"
TOOL_PROGRESS_MARKER = "⏳"
TOOL_RESULT_MARKER = "✅ Tool result:"

UI_ANNOTATION_MARKERS = (TOOL_CALL_MARKER, TOOL_PROGRESS_MARKER, TOOL_RESULT_MARKER)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_entry_id() -> str:
    return uuid4().hex


def tool_call_to_dict(tool_call: ToolCall) -> dict[str, Any]:
    """Serialise a tool call in the provider's wire shape."""
    return {
        "id": tool_call.id,
        "type": "function",
        "function": {"name": tool_call.name, "arguments": tool_call.arguments},
    }


def tool_call_from_dict(data: dict[str, Any]) -> ToolCall:
    """Parse a tool call from either the nested wire shape or a flat dict."""
    function = data.get("function") or {}
    return ToolCall(
        id=data.get("id") or "",
        name=function.get("name") or data.get("name") or "",
        arguments=function.get("arguments") or data.get("arguments") or "",
    )


@dataclass
class ConversationEntry:
    """One entry of a session's conversation log."""

    role: str
    content: str | None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    id: str | None = field(default_factory=_new_entry_id)

    def to_llm_message(self) -> LLMMessage:
        """Provider view of the entry, without session bookkeeping fields."""
        return LLMMessage(
            role=self.role,  # type: ignore[arg-type]
            content=self.content,
            tool_calls=list(self.tool_calls) if self.tool_calls else None,
            tool_call_id=self.tool_call_id,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            data["tool_calls"] = [tool_call_to_dict(tc) for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationEntry":
        raw_calls = data.get("tool_calls") or data.get("toolCalls")
        raw_timestamp = data.get("timestamp")
        if isinstance(raw_timestamp, datetime):
            timestamp = raw_timestamp
        elif raw_timestamp:
            timestamp = datetime.fromisoformat(str(raw_timestamp))
        else:
            timestamp = _utcnow()

        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=[tool_call_from_dict(tc) for tc in raw_calls] if raw_calls else None,
            tool_call_id=data.get("tool_call_id") or data.get("toolCallId"),
            timestamp=timestamp,
            id=data.get("id") or _new_entry_id(),
        )


class _Replayable(Protocol):
    role: str
    content: str | None
    tool_calls: list[ToolCall] | None
    tool_call_id: str | None


def is_ui_annotation(entry: _Replayable) -> bool:
    """Whether an entry is a display-only system note."""
    if entry.role != MessageRole.SYSTEM.value or not entry.content:
        return False
    return any(marker in entry.content for marker in UI_ANNOTATION_MARKERS)


def tool_call_annotation(tool_name: str, arguments: Any) -> ConversationEntry:
    return ConversationEntry(
        role=MessageRole.SYSTEM.value,
        content=f"{TOOL_CALL_MARKER} {tool_name} {json.dumps(arguments, default=str)}",
    )


def tool_progress_annotation(tool_name: str, message: str) -> ConversationEntry:
    return ConversationEntry(
        role=MessageRole.SYSTEM.value,
        content=f"{TOOL_PROGRESS_MARKER} {tool_name}: {message}",
    )


def tool_result_annotation(tool_name: str, result: str) -> ConversationEntry:
    return ConversationEntry(
        role=MessageRole.SYSTEM.value,
        content=f"{TOOL_RESULT_MARKER} {tool_name}: {result}",
    )


def _calls_include(entry: _Replayable, tool_call_id: str | None) -> bool:
    return any(tc.id == tool_call_id for tc in entry.tool_calls or [])


def filter_for_replay(entries: Iterable[_Replayable]) -> list[LLMMessage]:
    """Build the provider payload from a conversation log.

    Steps, in order:

    1. Drop UI-only system annotations.
    2. Drop tool entries with no earlier surviving assistant entry whose
       tool calls include their ``tool_call_id``.
    3. Strip session bookkeeping fields (``id``, ``timestamp``).
    4. Walk forward and keep a tool entry only if its ``tool_call_id`` is in
       the most recent assistant entry with tool calls.

    Applying the filter to its own output returns the same sequence.
    """
    items: Sequence[_Replayable] = list(entries)
    keep = [True] * len(items)

    for index, entry in enumerate(items):
        if is_ui_annotation(entry):
            keep[index] = False

    for index, entry in enumerate(items):
        if entry.role != MessageRole.TOOL.value:
            continue
        linked = False
        for previous in range(index - 1, -1, -1):
            if not keep[previous]:
                continue
            candidate = items[previous]
            if candidate.role == MessageRole.ASSISTANT.value and _calls_include(candidate, entry.tool_call_id):
                linked = True
                break
        if not linked:
            keep[index] = False

    stripped = [
        LLMMessage(
            role=entry.role,  # type: ignore[arg-type]
            content=entry.content,
            tool_calls=list(entry.tool_calls) if entry.tool_calls else None,
            tool_call_id=entry.tool_call_id,
        )
        for index, entry in enumerate(items)
        if keep[index]
    ]

    validated: list[LLMMessage] = []
    last_with_calls: LLMMessage | None = None
    for message in stripped:
        if message.role == MessageRole.ASSISTANT.value and message.tool_calls:
            last_with_calls = message
        if message.role == MessageRole.TOOL.value:
            if last_with_calls is None or not _calls_include(last_with_calls, message.tool_call_id):
                continue
        validated.append(message)

    return validated


class ConversationHistory:
    """Ordered, append-only log of a session's conversation."""

    def __init__(self, entries: Iterable[ConversationEntry] = ()):
        self._entries: list[ConversationEntry] = list(entries)

    def append(self, entry: ConversationEntry) -> ConversationEntry:
        self._entries.append(entry)
        return entry

    def add_user_message(self, content: str) -> ConversationEntry:
        """Add a user message."""
        return self.append(ConversationEntry(role=MessageRole.USER.value, content=content))

    def add_assistant_message(
        self, content: str | None, tool_calls: list[ToolCall] | None = None
    ) -> ConversationEntry:
        """Add an assistant message."""
        return self.append(ConversationEntry(
            role=MessageRole.ASSISTANT.value,
            content=content,
            tool_calls=tool_calls,
        ))

    def add_tool_result(self, tool_call_id: str, result: str) -> ConversationEntry:
        """Add a tool result."""
        return self.append(ConversationEntry(
            role=MessageRole.TOOL.value,
            content=result,
            tool_call_id=tool_call_id,
        ))

    def all(self) -> list[ConversationEntry]:
        return list(self._entries)

    def for_provider_replay(self) -> list[LLMMessage]:
        return filter_for_replay(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)
