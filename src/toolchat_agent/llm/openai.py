"""
Chat-completions provider for OpenAI and OpenAI-compatible endpoints.
"""

from typing import Any, AsyncIterator

import openai
import structlog

from ..config import LLMConfig
from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    StreamDelta,
    ToolCall,
    ToolCallDelta,
    ToolDefinition,
)

logger = structlog.get_logger()


def message_payload(message: LLMMessage) -> dict[str, Any]:
    """Wire shape of one message."""
    payload: dict[str, Any] = {"role": message.role, "content": message.content}

    if message.role == "tool":
        payload["tool_call_id"] = message.tool_call_id
    elif message.role == "assistant" and message.tool_calls:
        # Assistant entries that only call tools carry null content
        payload["content"] = message.content or None
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in message.tool_calls
        ]

    return payload


def tool_payload(tool: ToolDefinition) -> dict[str, Any]:
    """Wire shape of one tool declaration."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _fragments(delta: Any) -> list[ToolCallDelta]:
    fragments = []
    for tc in delta.tool_calls or []:
        function = tc.function
        fragments.append(ToolCallDelta(
            index=tc.index,
            id=tc.id,
            name=function.name if function else None,
            arguments=function.arguments if function else None,
        ))
    return fragments


class OpenAILLM(BaseLLM):
    """Provider backed by ``openai.AsyncOpenAI``.

    ``base_url`` points the client at any compatible server (vLLM, Ollama,
    LM Studio, ...). A preconfigured ``client`` can be injected instead.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        client: Any = None,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    @classmethod
    def from_config(cls, config: LLMConfig, client: Any = None) -> "OpenAILLM":
        return cls(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            client=client,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _build_request(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        payload = [message_payload(m) for m in messages]
        if system_prompt:
            payload.insert(0, {"role": "system", "content": system_prompt})

        request: dict[str, Any] = {
            "model": self.model,
            "messages": payload,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if stream:
            request["stream"] = True
        if tools:
            request["tools"] = [tool_payload(t) for t in tools]
            request["tool_choice"] = "auto"
        return request

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Request one complete message."""
        request = self._build_request(messages, tools, system_prompt, stream=False)

        try:
            response = await self.client.chat.completions.create(**request)
        except openai.APIError as e:
            logger.error("Completion request failed", model=self.model, error=str(e))
            raise

        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            tool_calls=[
                ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "")
                for tc in choice.message.tool_calls or []
            ],
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=response.model,
            stop_reason=choice.finish_reason,
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Request a streamed message; yields one delta per non-empty chunk."""
        request = self._build_request(messages, tools, system_prompt, stream=True)

        try:
            chunks = await self.client.chat.completions.create(**request)
            async for chunk in chunks:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                fragments = _fragments(delta)
                if delta.content or fragments:
                    yield StreamDelta(content=delta.content, tool_calls=fragments)
        except openai.APIError as e:
            logger.error("Completion stream failed", model=self.model, error=str(e))
            raise
