"""
Core agent implementation: drives one conversational turn.

A turn is at most two provider calls:
1. The user's message plus history (and tool declarations when enabled).
2. If the first response requested tools, they run in order and a second,
   tool-free call produces the final answer.

There is exactly one tool round per turn; further tool use needs a new turn.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator
from uuid import uuid4

import structlog

from ..config import Settings, get_settings
from ..llm import BaseLLM, ToolCall, ToolCallDelta, ToolDefinition, create_llm
from ..tools import ToolInvoker, ToolRegistry, create_default_registry
from .events import (
    AgentStreamEvent,
    TokenEvent,
    ToolCallEvent,
    ToolProgressUpdate,
    ToolResultEvent,
)
from .history import ConversationHistory

logger = structlog.get_logger()

STREAM_ERROR_MESSAGE = "Error: Failed to get streaming response"
RESPONSE_ERROR_MESSAGE = "Error: Failed to get response from agent"
EMPTY_RESPONSE_MESSAGE = "No response"


class TurnState(str, Enum):
    """States of a single turn."""
    IDLE = "idle"
    AWAITING_FIRST_COMPLETION = "awaiting_first_completion"
    DECODING_TOKENS = "decoding_tokens"
    ACCUMULATING_TOOL_CALLS = "accumulating_tool_calls"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FINAL_COMPLETION = "awaiting_final_completion"
    DECODING_FINAL_TOKENS = "decoding_final_tokens"
    DONE = "done"
    ERROR = "error"


class _Turn:
    """Tracks the state of one turn for logging."""

    def __init__(self, mode: str):
        self.id = uuid4().hex[:12]
        self.mode = mode
        self.state = TurnState.IDLE

    def advance(self, state: TurnState) -> None:
        if state is self.state:
            return
        logger.debug("Turn state", turn_id=self.id, mode=self.mode, previous=self.state.value, state=state.value)
        self.state = state


@dataclass
class ClientMetadata:
    """Ambient information about the caller, e.g. parsed from a handshake."""

    timezone: str | None = None
    locale: str | None = None


# tool name -> {argument name: ClientMetadata attribute}
METADATA_ENRICHMENT: dict[str, dict[str, str]] = {
    "get_current_time": {"timezone": "timezone", "locale": "locale"},
}


def enrich_tool_arguments(
    tool_name: str,
    arguments: dict[str, Any],
    metadata: ClientMetadata | None,
) -> dict[str, Any]:
    """Fill omitted arguments from client metadata.

    Returns a new dict. A value supplied by the model is never replaced.
    """
    enriched = dict(arguments)
    if metadata is None:
        return enriched

    for argument, attribute in METADATA_ENRICHMENT.get(tool_name, {}).items():
        value = getattr(metadata, attribute, None)
        if value and not enriched.get(argument):
            enriched[argument] = value

    return enriched


class ToolCallAccumulator:
    """Rebuilds tool calls from indexed stream fragments.

    The first fragment for an index opens an empty call; ``id`` and ``name``
    are taken from the first fragment that carries them and argument text is
    concatenated in arrival order.
    """

    def __init__(self):
        self._builders: dict[int, dict[str, str]] = {}

    def feed(self, fragment: ToolCallDelta) -> None:
        builder = self._builders.setdefault(
            fragment.index, {"id": "", "name": "", "arguments": ""}
        )
        if fragment.id and not builder["id"]:
            builder["id"] = fragment.id
        if fragment.name and not builder["name"]:
            builder["name"] = fragment.name
        if fragment.arguments:
            builder["arguments"] += fragment.arguments

    def build(self) -> list[ToolCall]:
        """Return the calls ordered by index."""
        calls = []
        for index in sorted(self._builders):
            builder = self._builders[index]
            calls.append(ToolCall(
                id=builder["id"] or f"call_{uuid4().hex[:24]}",
                name=builder["name"],
                arguments=builder["arguments"],
            ))
        return calls

    def __len__(self) -> int:
        return len(self._builders)


class Agent:
    """Runs conversational turns against the completion provider and tools.

    The agent holds no conversation state of its own: every call receives
    the ``ConversationHistory`` to read from and append to.
    """

    def __init__(
        self,
        llm: BaseLLM | None = None,
        tool_registry: ToolRegistry | None = None,
        invoker: ToolInvoker | None = None,
        settings: Settings | None = None,
        system_prompt: str | None = None,
    ):
        self.settings = settings or get_settings()
        self.llm = llm or create_llm(settings=self.settings)
        self.tool_registry = tool_registry if tool_registry is not None else create_default_registry()
        self.invoker = invoker or ToolInvoker(self.tool_registry)
        self.system_prompt = system_prompt

    def get_system_prompt(self, enable_tools: bool = True) -> str:
        if self.system_prompt:
            return self.system_prompt
        if enable_tools:
            return self.settings.system_prompt_tools
        return self.settings.system_prompt_plain

    def get_available_tools(self, enable_tools: bool = True) -> list[str]:
        return self.tool_registry.list_tools() if enable_tools else []

    def _tool_definitions(self, enable_tools: bool) -> list[ToolDefinition] | None:
        if not enable_tools:
            return None
        return self.tool_registry.get_definitions() or None

    async def stream_message(
        self,
        message: str,
        history: ConversationHistory,
        enable_tools: bool = True,
        metadata: ClientMetadata | None = None,
    ) -> AsyncIterator[AgentStreamEvent]:
        """Run one turn, yielding events as they happen.

        Entries are appended to ``history`` as the turn progresses; a
        provider failure ends the turn with a single error token and leaves
        everything appended so far in place.
        """
        turn = _Turn("stream")
        system_prompt = self.get_system_prompt(enable_tools)
        history.add_user_message(message)

        try:
            turn.advance(TurnState.AWAITING_FIRST_COMPLETION)
            buffer: list[str] = []
            accumulator = ToolCallAccumulator()

            async for delta in self.llm.stream(
                messages=history.for_provider_replay(),
                tools=self._tool_definitions(enable_tools),
                system_prompt=system_prompt,
            ):
                if delta.tool_calls:
                    turn.advance(TurnState.ACCUMULATING_TOOL_CALLS)
                    for fragment in delta.tool_calls:
                        accumulator.feed(fragment)
                if delta.content:
                    if turn.state is TurnState.AWAITING_FIRST_COMPLETION:
                        turn.advance(TurnState.DECODING_TOKENS)
                    buffer.append(delta.content)
                    yield TokenEvent(content=delta.content)

            response_text = "".join(buffer)

            if not accumulator:
                history.add_assistant_message(response_text)
                turn.advance(TurnState.DONE)
                return

            tool_calls = accumulator.build()
            history.add_assistant_message(response_text or None, tool_calls)
            logger.info(
                "Tool calls requested",
                turn_id=turn.id,
                tools=[tc.name for tc in tool_calls],
            )

            turn.advance(TurnState.EXECUTING_TOOLS)
            for tool_call in tool_calls:
                async for event in self._execute_tool_call(tool_call, history, metadata):
                    yield event

            turn.advance(TurnState.AWAITING_FINAL_COMPLETION)
            final_buffer: list[str] = []
            async for delta in self.llm.stream(
                messages=history.for_provider_replay(),
                tools=None,
                system_prompt=system_prompt,
            ):
                if delta.content:
                    turn.advance(TurnState.DECODING_FINAL_TOKENS)
                    final_buffer.append(delta.content)
                    yield TokenEvent(content=delta.content)

            history.add_assistant_message("".join(final_buffer))
            turn.advance(TurnState.DONE)

        except Exception as e:
            logger.error("LLM streaming error", turn_id=turn.id, state=turn.state.value, error=str(e))
            turn.advance(TurnState.ERROR)
            yield TokenEvent(content=STREAM_ERROR_MESSAGE)

    async def _execute_tool_call(
        self,
        tool_call: ToolCall,
        history: ConversationHistory,
        metadata: ClientMetadata | None,
    ) -> AsyncIterator[AgentStreamEvent]:
        """Run a single tool call, appending its result to history."""
        try:
            parsed = json.loads(tool_call.arguments) if tool_call.arguments.strip() else {}
            if not isinstance(parsed, dict):
                raise ValueError("arguments must be a JSON object")
        except ValueError as e:
            logger.warning("Invalid tool arguments", tool=tool_call.name, error=str(e))
            yield ToolCallEvent(name=tool_call.name, args=tool_call.arguments)
            error_text = f"Error executing {tool_call.name}: invalid arguments ({e})"
            history.add_tool_result(tool_call.id, error_text)
            yield ToolResultEvent(name=tool_call.name, result=error_text, success=False)
            return

        arguments = enrich_tool_arguments(tool_call.name, parsed, metadata)
        yield ToolCallEvent(name=tool_call.name, args=arguments)

        run = self.invoker.invoke_streaming(tool_call.name, arguments)
        async for line in run:
            yield ToolProgressUpdate(name=tool_call.name, message=line)

        result = run.result
        content = result.as_content()
        history.add_tool_result(tool_call.id, content)
        yield ToolResultEvent(
            name=tool_call.name,
            result=content,
            success=result.success,
            elapsed_ms=run.elapsed_ms,
        )

    async def process_message(
        self,
        message: str,
        history: ConversationHistory,
        enable_tools: bool = True,
        metadata: ClientMetadata | None = None,
    ) -> str:
        """Run one turn with non-streaming provider calls and return the answer."""
        turn = _Turn("generate")
        system_prompt = self.get_system_prompt(enable_tools)
        history.add_user_message(message)

        try:
            turn.advance(TurnState.AWAITING_FIRST_COMPLETION)
            response = await self.llm.generate(
                messages=history.for_provider_replay(),
                tools=self._tool_definitions(enable_tools),
                system_prompt=system_prompt,
            )

            if not response.tool_calls:
                content = response.content or EMPTY_RESPONSE_MESSAGE
                history.add_assistant_message(content)
                turn.advance(TurnState.DONE)
                return content

            tool_calls = [
                ToolCall(id=tc.id or f"call_{uuid4().hex[:24]}", name=tc.name, arguments=tc.arguments)
                for tc in response.tool_calls
            ]
            history.add_assistant_message(response.content or None, tool_calls)

            turn.advance(TurnState.EXECUTING_TOOLS)
            for tool_call in tool_calls:
                async for _ in self._execute_tool_call(tool_call, history, metadata):
                    pass

            turn.advance(TurnState.AWAITING_FINAL_COMPLETION)
            final = await self.llm.generate(
                messages=history.for_provider_replay(),
                tools=None,
                system_prompt=system_prompt,
            )
            content = final.content or EMPTY_RESPONSE_MESSAGE
            history.add_assistant_message(content)
            turn.advance(TurnState.DONE)
            return content

        except Exception as e:
            logger.error("LLM generation error", turn_id=turn.id, state=turn.state.value, error=str(e))
            turn.advance(TurnState.ERROR)
            return RESPONSE_ERROR_MESSAGE
