"""
Configuration management for Toolchat-Agent

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TOOLS_PROMPT = (
    "You are a helpful AI assistant with access to various tools. You MUST use these "
    "tools when users ask for information that the tools can provide. For example: use "
    "get_weather when asked about weather, use get_current_time when asked about time, "
    "use calculate for math problems. Always use the appropriate tool rather than saying "
    "you cannot help. NEVER describe or mention tool calls in your text response - just "
    "use them directly."
)

DEFAULT_PLAIN_PROMPT = "You are a helpful AI assistant."


class LLMConfig(BaseSettings):
    """Configuration for the completion provider."""

    model_config = SettingsConfigDict(extra="ignore")

    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 1000
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Toolchat-Agent"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: str = Field(default="*", description="Comma-separated allowed CORS origins")

    # Completion provider
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openai_base_url: str | None = Field(default=None, description="OpenAI-compatible base URL")
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.7
    openai_max_tokens: int = 1000

    # Prompts
    system_prompt_tools: str = DEFAULT_TOOLS_PROMPT
    system_prompt_plain: str = DEFAULT_PLAIN_PROMPT

    # Sessions
    session_backend: Literal["memory", "sql"] = "memory"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/chatbot.db",
        description="Database connection URL (sql session backend)",
    )
    session_timeout_hours: int = Field(default=24, description="Session inactivity timeout in hours")
    session_sweep_interval_minutes: int = Field(default=60, description="Stale session sweep interval")

    # Transports
    ws_ping_interval_seconds: float = Field(default=30.0, description="WebSocket keep-alive interval")
    default_timezone: str = "UTC"
    default_locale: str = "en-US"
    record_tool_annotations: bool = Field(
        default=True,
        description="Persist UI-only tool lifecycle notes alongside the conversation",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str) -> str:
        return v.strip() if v else ""

    @property
    def cors_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def get_llm_config(self) -> LLMConfig:
        """Get configuration for the completion provider."""
        return LLMConfig(
            model=self.openai_model,
            api_key=self.openai_api_key,
            base_url=self.openai_base_url,
            max_tokens=self.openai_max_tokens,
            temperature=self.openai_temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
