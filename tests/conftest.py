"""
Shared fixtures: a scripted completion provider and ready-made settings.
"""

import os
from unittest.mock import patch

import pytest

from toolchat_agent.config import Settings
from toolchat_agent.llm.base import (
    BaseLLM,
    LLMResponse,
    StreamDelta,
    ToolCall,
    ToolCallDelta,
)


class FakeLLM(BaseLLM):
    """Completion provider that replays canned streams and responses.

    Each ``stream`` call consumes the next list of deltas; each ``generate``
    call consumes the next response. Every call is recorded in ``calls``.
    """

    def __init__(self, streams=None, responses=None, error=None):
        super().__init__(api_key="test-key", model="fake-model")
        self.streams = list(streams or [])
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    @property
    def provider_name(self) -> str:
        return "fake"

    def _record(self, messages, tools, system_prompt):
        self.calls.append({
            "messages": list(messages),
            "tools": tools,
            "system_prompt": system_prompt,
        })

    async def generate(self, messages, tools=None, system_prompt=None):
        self._record(messages, tools, system_prompt)
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    async def stream(self, messages, tools=None, system_prompt=None):
        self._record(messages, tools, system_prompt)
        if self.error is not None:
            raise self.error
        for delta in self.streams.pop(0):
            yield delta


def text_stream(*chunks):
    return [StreamDelta(content=chunk) for chunk in chunks]


def tool_call_stream(call_id, name, arguments, index=0):
    """A stream requesting one tool call, delivered in three fragments."""
    return [
        StreamDelta(tool_calls=[ToolCallDelta(index=index, id=call_id)]),
        StreamDelta(tool_calls=[ToolCallDelta(index=index, name=name)]),
        StreamDelta(tool_calls=[ToolCallDelta(index=index, arguments=arguments)]),
    ]


def text_response(content):
    return LLMResponse(content=content, model="fake-model")


def tool_call_response(call_id, name, arguments):
    return LLMResponse(
        content="",
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
        model="fake-model",
    )


@pytest.fixture
def settings():
    with patch.dict(os.environ, {}, clear=True):
        yield Settings(_env_file=None, openai_api_key="test-key")
