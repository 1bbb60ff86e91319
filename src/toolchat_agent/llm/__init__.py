"""
LLM module for the completion provider contract.
"""

from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    StreamDelta,
    ToolCall,
    ToolCallDelta,
    ToolDefinition,
)
from .openai import OpenAILLM
from .factory import create_llm

__all__ = [
    "BaseLLM",
    "LLMMessage",
    "LLMResponse",
    "StreamDelta",
    "ToolCall",
    "ToolCallDelta",
    "ToolDefinition",
    "OpenAILLM",
    "create_llm",
]
