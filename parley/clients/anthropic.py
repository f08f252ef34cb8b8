"""Anthropic Messages API adapter producing chat-completions shaped replies."""

import json
import os
from typing import Any, Literal

from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic
from pydantic import BaseModel

from parley.clients.base import (
    ModelClientConfig,
    RequestRateLimiter,
    TokenEstimator,
    is_retryable_status,
    request_with_retries,
)
from parley.models.llm import parse_arguments
from parley.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_INSTRUCTION_PREFIX = "System instruction: "


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


def _merge_consecutive(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Fold neighbours with the same role and drop empty text, both rejected by the Messages API."""
    merged: list[dict[str, Any]] = []
    for message in messages:
        blocks = message["content"]
        if isinstance(blocks, str):
            blocks = [{"type": "text", "text": blocks}] if blocks.strip() else []
        if not blocks:
            continue
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1]["content"].extend(blocks)
        else:
            merged.append({"role": message["role"], "content": list(blocks)})
    return merged


def to_anthropic_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Convert chat-completions messages to ``(system_prompt, messages)``.

    Leading system messages form the system prompt; later system messages
    become prefixed user text so their position in the dialogue is kept.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""

        if role == "system":
            if not converted:
                system_parts.append(content)
            elif content.strip():
                converted.append({"role": "user", "content": f"{SYSTEM_INSTRUCTION_PREFIX}{content}"})
        elif role == "tool":
            block = {"type": "tool_result", "tool_use_id": message.get("tool_call_id"), "content": content}
            converted.append({"role": "user", "content": [block]})
        elif role == "assistant":
            blocks: list[dict[str, Any]] = []
            if content.strip():
                blocks.append({"type": "text", "text": content})
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.get("id"),
                        "name": function.get("name"),
                        "input": parse_arguments(function.get("arguments")) or {},
                    }
                )
            if blocks:
                converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": "user", "content": content})

    return "\n\n".join(part for part in system_parts if part), _merge_consecutive(converted)


def to_anthropic_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    converted = []
    for index, tool in enumerate(tools):
        function = tool.get("function", tool)
        entry: dict[str, Any] = {
            "name": function["name"],
            "description": function.get("description", ""),
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        }
        # Caching the last tool caches every tool definition before it
        if index == len(tools) - 1:
            entry["cache_control"] = CacheControl().model_dump()
        converted.append(entry)
    return converted


def to_chat_completion(message: dict[str, Any]) -> dict[str, Any]:
    """Convert a dumped Anthropic Message into a chat-completions reply."""
    text_parts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for block in message.get("content") or []:
        if block.get("type") == "text":
            text_parts.append(block.get("text") or "")
        elif block.get("type") == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {"name": block.get("name"), "arguments": json.dumps(block.get("input") or {})},
                }
            )
        else:
            logger.warning(f"Unknown content block type: {block.get('type')}")

    usage = message.get("usage") or {}
    input_tokens = usage.get("input_tokens") or 0
    output_tokens = usage.get("output_tokens") or 0
    return {
        "model": message.get("model"),
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "".join(text_parts), "tool_calls": tool_calls or None},
                "finish_reason": message.get("stop_reason"),
            }
        ],
        "usage": {
            "prompt_tokens": input_tokens,
            "completion_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "cache_creation_input_tokens": usage.get("cache_creation_input_tokens") or 0,
            "cache_read_input_tokens": usage.get("cache_read_input_tokens") or 0,
        },
    }


class AnthropicClient:
    """Model client backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        config: ModelClientConfig | None = None,
        client: AsyncAnthropic | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
            client: Preconfigured SDK client
        """
        self.config = config or ModelClientConfig(model="claude-3-5-sonnet-20241022")
        if client is None:
            anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            # Retries are handled by request_with_retries
            client = AsyncAnthropic(api_key=anthropic_api_key, max_retries=0, timeout=self.config.timeout)

        self.client = client
        self.rate_limiter = RequestRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)
        self.tokens = TokenEstimator(enabled=self.config.use_tiktoken)

    async def chat(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None, **overrides: Any
    ) -> dict[str, Any]:
        """Send a chat-completions style request through the Messages API."""
        system_prompt, anthropic_messages = to_anthropic_messages(messages)
        request_params: dict[str, Any] = {
            "model": overrides.get("model", self.config.model),
            "max_tokens": overrides.get("max_tokens", self.config.max_tokens),
            "temperature": overrides.get("temperature", self.config.temperature),
            "messages": anthropic_messages,
        }
        if system_prompt:
            request_params["system"] = system_prompt
        anthropic_tools = to_anthropic_tools(tools)
        if anthropic_tools:
            request_params["tools"] = anthropic_tools

        estimated_tokens = self.tokens.count_messages(messages, tools)
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier="anthropic")

        logger.debug(f"Making Anthropic API call with model: {request_params['model']}")
        response = await request_with_retries(
            lambda: self.client.messages.create(**request_params), self.config, self._classify
        )
        return to_chat_completion(response.model_dump())

    def validate_message_tokens(self, message: str) -> None:
        self.tokens.validate_message(message, self.config.max_message_tokens)

    @staticmethod
    def _classify(error: Exception) -> tuple[bool, float | None, int | None]:
        if isinstance(error, APIStatusError):
            retry_after = None
            header = error.response.headers.get("retry-after") if error.response is not None else None
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            return is_retryable_status(error.status_code), retry_after, error.status_code
        if isinstance(error, APIConnectionError):
            return True, None, None
        return False, None, None
