"""
Tests for agent module.
"""

import pytest

from toolchat_agent.agent import (
    Agent,
    ClientMetadata,
    ConversationHistory,
    TokenEvent,
    ToolCallEvent,
    ToolProgressUpdate,
    ToolResultEvent,
)
from toolchat_agent.agent.core import (
    RESPONSE_ERROR_MESSAGE,
    STREAM_ERROR_MESSAGE,
    ToolCallAccumulator,
    enrich_tool_arguments,
)
from toolchat_agent.llm.base import ToolCallDelta
from toolchat_agent.tools import SimpleExecutor, ToolRegistry, ToolSpec

from conftest import (
    FakeLLM,
    text_response,
    text_stream,
    tool_call_response,
    tool_call_stream,
)


async def _collect(agent, message, history, **kwargs):
    return [event async for event in agent.stream_message(message, history, **kwargs)]


def test_accumulator_joins_fragments():
    """Test tool calls are rebuilt from indexed fragments."""
    acc = ToolCallAccumulator()
    acc.feed(ToolCallDelta(index=1, id="call_b", name="get_weather", arguments='{"loc'))
    acc.feed(ToolCallDelta(index=0, id="call_a", name="calculate"))
    acc.feed(ToolCallDelta(index=1, arguments='ation": "Seoul"}'))
    acc.feed(ToolCallDelta(index=0, id="ignored", arguments='{"expression": "1"}'))

    calls = acc.build()

    assert len(acc) == 2
    assert [c.id for c in calls] == ["call_a", "call_b"]
    assert calls[0].arguments == '{"expression": "1"}'
    assert calls[1].arguments == '{"location": "Seoul"}'


def test_accumulator_generates_missing_id():
    """Test a call without an id gets a generated one."""
    acc = ToolCallAccumulator()
    acc.feed(ToolCallDelta(index=0, name="calculate", arguments="{}"))

    (call,) = acc.build()

    assert call.id.startswith("call_")


def test_enrichment_fills_missing_values():
    """Test client metadata fills omitted time arguments."""
    metadata = ClientMetadata(timezone="Asia/Seoul", locale="ko-KR")

    assert enrich_tool_arguments("get_current_time", {}, metadata) == {
        "timezone": "Asia/Seoul",
        "locale": "ko-KR",
    }


def test_enrichment_never_overrides_model_values():
    """Test a value supplied by the model wins over metadata."""
    metadata = ClientMetadata(timezone="Asia/Seoul", locale="ko-KR")
    original = {"timezone": "Europe/London"}

    enriched = enrich_tool_arguments("get_current_time", original, metadata)

    assert enriched["timezone"] == "Europe/London"
    assert enriched["locale"] == "ko-KR"
    assert original == {"timezone": "Europe/London"}


def test_enrichment_ignores_other_tools():
    """Test only mapped tools are enriched."""
    metadata = ClientMetadata(timezone="Asia/Seoul")

    assert enrich_tool_arguments("calculate", {"expression": "1"}, metadata) == {"expression": "1"}
    assert enrich_tool_arguments("get_current_time", {}, None) == {}


def test_system_prompt_selection(settings):
    """Test the prompt depends on whether tools are enabled."""
    agent = Agent(llm=FakeLLM(), settings=settings)

    assert agent.get_system_prompt(True) == settings.system_prompt_tools
    assert agent.get_system_prompt(False) == settings.system_prompt_plain
    assert agent.get_available_tools(False) == []
    assert "calculate" in agent.get_available_tools(True)


@pytest.mark.asyncio
async def test_stream_plain_answer(settings):
    """Test a turn without tool calls streams tokens and stores the answer."""
    llm = FakeLLM(streams=[text_stream("Hello", " there")])
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    events = await _collect(agent, "Hi", history)

    assert [e.content for e in events] == ["Hello", " there"]
    assert [(e.role, e.content) for e in history] == [("user", "Hi"), ("assistant", "Hello there")]
    assert len(llm.calls) == 1
    assert llm.calls[0]["system_prompt"] == settings.system_prompt_tools
    assert [t.name for t in llm.calls[0]["tools"]] == agent.get_available_tools()


@pytest.mark.asyncio
async def test_stream_tools_disabled(settings):
    """Test no tool declarations are sent when tools are disabled."""
    llm = FakeLLM(streams=[text_stream("ok")])
    agent = Agent(llm=llm, settings=settings)

    await _collect(agent, "Hi", ConversationHistory(), enable_tools=False)

    assert llm.calls[0]["tools"] is None
    assert llm.calls[0]["system_prompt"] == settings.system_prompt_plain


@pytest.mark.asyncio
async def test_stream_calculator_turn(settings):
    """Test the full tool round: call, progress, result, final answer."""
    llm = FakeLLM(streams=[
        tool_call_stream("call_1", "calculate", '{"expression": "2 + 2 * 3"}'),
        text_stream("The answer", " is 8."),
    ])
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    events = await _collect(agent, "What is 2 + 2 * 3?", history)

    assert [e.type for e in events] == [
        "tool_call",
        "tool_progress",
        "tool_progress",
        "tool_result",
        "token",
        "token",
    ]
    assert events[0] == ToolCallEvent(name="calculate", args={"expression": "2 + 2 * 3"})
    assert events[1] == ToolProgressUpdate(name="calculate", message="Parsing expression...")
    assert isinstance(events[3], ToolResultEvent)
    assert events[3].result == "2 + 2 * 3 = 8"
    assert events[3].success is True

    roles = [e.role for e in history]
    assert roles == ["user", "assistant", "tool", "assistant"]
    entries = history.all()
    assert entries[1].tool_calls[0].id == "call_1"
    assert entries[2].tool_call_id == "call_1"
    assert entries[3].content == "The answer is 8."

    # The follow-up call sees the tool result and declares no tools.
    assert llm.calls[1]["tools"] is None
    assert [m.role for m in llm.calls[1]["messages"]] == ["user", "assistant", "tool"]


@pytest.mark.asyncio
async def test_stream_enriches_time_tool(settings):
    """Test handshake metadata reaches the time tool."""
    llm = FakeLLM(streams=[
        tool_call_stream("call_1", "get_current_time", "{}"),
        text_stream("It is late."),
    ])
    agent = Agent(llm=llm, settings=settings)

    events = await _collect(
        agent,
        "What time is it?",
        ConversationHistory(),
        metadata=ClientMetadata(timezone="Asia/Seoul", locale="ko-KR"),
    )

    assert events[0].args == {"timezone": "Asia/Seoul", "locale": "ko-KR"}
    assert events[3].success is True


@pytest.mark.asyncio
async def test_stream_invalid_tool_arguments(settings):
    """Test unparseable arguments fail the tool but not the turn."""
    llm = FakeLLM(streams=[
        tool_call_stream("call_1", "calculate", '{"expression": '),
        text_stream("Sorry."),
    ])
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    events = await _collect(agent, "Compute", history)

    assert events[0].args == '{"expression": '
    assert events[1].type == "tool_result"
    assert events[1].success is False
    assert "invalid arguments" in events[1].result
    assert events[-1] == TokenEvent(content="Sorry.")
    assert history.all()[2].role == "tool"


@pytest.mark.asyncio
async def test_stream_failing_tool(settings):
    """Test a tool error is reported as a result and the answer follows."""
    async def broken(**kwargs) -> str:
        raise RuntimeError("disk on fire")

    registry = ToolRegistry()
    registry.register(ToolSpec(name="broken", description="Always fails"), SimpleExecutor(broken))
    llm = FakeLLM(streams=[
        tool_call_stream("call_1", "broken", "{}"),
        text_stream("It failed."),
    ])
    agent = Agent(llm=llm, tool_registry=registry, settings=settings)
    history = ConversationHistory()

    events = await _collect(agent, "Try it", history)

    result = [e for e in events if e.type == "tool_result"][0]
    assert result.success is False
    assert result.result == "Error: disk on fire"
    assert history.all()[2].content == "Error: disk on fire"


@pytest.mark.asyncio
async def test_stream_provider_error(settings):
    """Test a provider failure yields a single error token."""
    llm = FakeLLM(error=RuntimeError("connection reset"))
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    events = await _collect(agent, "Hi", history)

    assert events == [TokenEvent(content=STREAM_ERROR_MESSAGE)]
    assert [e.role for e in history] == ["user"]


@pytest.mark.asyncio
async def test_stream_replays_previous_turns(settings):
    """Test earlier turns are sent back without annotations."""
    llm = FakeLLM(streams=[text_stream("first"), text_stream("second")])
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    await _collect(agent, "one", history)
    await _collect(agent, "two", history)

    assert [m.content for m in llm.calls[1]["messages"]] == ["one", "first", "two"]


@pytest.mark.asyncio
async def test_process_message_plain(settings):
    """Test the non-streaming turn returns the answer."""
    llm = FakeLLM(responses=[text_response("Hello!")])
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    answer = await agent.process_message("Hi", history)

    assert answer == "Hello!"
    assert [e.role for e in history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_process_message_with_tool(settings):
    """Test the non-streaming turn runs tools before answering."""
    llm = FakeLLM(responses=[
        tool_call_response("call_1", "calculate", '{"expression": "2 + 2 * 3"}'),
        text_response("2 + 2 * 3 is 8."),
    ])
    agent = Agent(llm=llm, settings=settings)
    history = ConversationHistory()

    answer = await agent.process_message("What is 2 + 2 * 3?", history)

    assert answer == "2 + 2 * 3 is 8."
    assert history.all()[2].content == "2 + 2 * 3 = 8"
    assert llm.calls[1]["tools"] is None


@pytest.mark.asyncio
async def test_process_message_error(settings):
    """Test a provider failure returns the error text."""
    agent = Agent(llm=FakeLLM(error=RuntimeError("boom")), settings=settings)

    answer = await agent.process_message("Hi", ConversationHistory())

    assert answer == RESPONSE_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_process_message_empty_response(settings):
    """Test an empty completion becomes the placeholder answer."""
    agent = Agent(llm=FakeLLM(responses=[text_response("")]), settings=settings)

    answer = await agent.process_message("Hi", ConversationHistory())

    assert answer == "No response"
