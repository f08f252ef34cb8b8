"""Service settings read from the environment."""

import os
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel

from parley.clients.base import ModelClientConfig

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to tools. Call a tool when it is needed to answer, "
    "explain your intent in the justification argument, and reply in plain language when the task is done."
)


class Settings(BaseModel):
    """Runtime configuration for the HTTP service."""

    provider: Literal["openai", "anthropic"] = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    temperature: float = 0.2
    context_tokens: int = 32_000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    session_timeout_minutes: int = 60
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        provider = os.getenv("PARLEY_PROVIDER", "openai").lower()
        fallback_key = os.getenv("ANTHROPIC_API_KEY") if provider == "anthropic" else os.getenv("OPENAI_API_KEY")
        default_model = "claude-3-5-sonnet-20241022" if provider == "anthropic" else "gpt-4o-mini"
        return cls(
            provider=provider,
            base_url=os.getenv("PARLEY_BASE_URL", "https://api.openai.com/v1"),
            api_key=os.getenv("PARLEY_API_KEY") or fallback_key,
            model=os.getenv("PARLEY_MODEL", default_model),
            max_tokens=int(os.getenv("PARLEY_MAX_TOKENS", "1024")),
            temperature=float(os.getenv("PARLEY_TEMPERATURE", "0.2")),
            context_tokens=int(os.getenv("PARLEY_CONTEXT_TOKENS", "32000")),
            system_prompt=os.getenv("PARLEY_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            session_timeout_minutes=int(os.getenv("PARLEY_SESSION_TIMEOUT_MINUTES", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def client_config(self) -> ModelClientConfig:
        return ModelClientConfig(model=self.model, max_tokens=self.max_tokens, temperature=self.temperature)


@dataclass
class EngineConfig:
    """Bounds and timings for one conversation turn."""

    max_pre_tool_attempts: int = 3
    retry_delays: tuple[float, ...] = (1.0, 2.0)
    max_repeat: int = 5
    loop_guard_limit: int = 3
    tool_output_inline_limit: int = 8_000
