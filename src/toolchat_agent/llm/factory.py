"""
Builds the completion provider from settings.
"""

from ..config import LLMConfig, Settings, get_settings
from .base import BaseLLM
from .openai import OpenAILLM


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create the provider. Any OpenAI-compatible server works through ``base_url``."""
    if config is None:
        config = (settings or get_settings()).get_llm_config()
    return OpenAILLM.from_config(config)
