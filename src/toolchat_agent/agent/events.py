"""
Events emitted by the agent while streaming a turn.
"""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class TokenEvent:
    """A fragment of assistant text."""

    content: str
    type: str = field(default="token", init=False)


@dataclass
class ToolCallEvent:
    """A tool is about to run with these arguments."""

    name: str
    args: Any
    type: str = field(default="tool_call", init=False)


@dataclass
class ToolProgressUpdate:
    """An intermediate status line from a running tool."""

    name: str
    message: str
    type: str = field(default="tool_progress", init=False)


@dataclass
class ToolResultEvent:
    """A tool finished; ``result`` is the text stored in history."""

    name: str
    result: str
    success: bool = True
    elapsed_ms: float = 0.0
    type: str = field(default="tool_result", init=False)


AgentStreamEvent = Union[TokenEvent, ToolCallEvent, ToolProgressUpdate, ToolResultEvent]
