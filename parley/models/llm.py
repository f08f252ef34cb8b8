"""LLM-related data models and types (provider-agnostic)."""

import json
from dataclasses import dataclass
from typing import Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field

cuid = cuid_wrapper()

Role = Literal["system", "user", "assistant", "tool"]


def parse_arguments(raw: Any) -> dict[str, Any] | None:
    """Coerce wire-format tool arguments into a dict.

    Returns None when a JSON string cannot be decoded into an object.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    type: Literal["function"] = "function"

    class Config:
        extra = "ignore"

    @classmethod
    def from_wire(cls, raw: "ToolCall | dict[str, Any]") -> "ToolCall":
        """Build a ToolCall from the nested OpenAI shape or the flat shape.

        Raises:
            ValueError: If the call has no name or its arguments are not an object
        """
        if isinstance(raw, ToolCall):
            return raw

        function = raw.get("function") if isinstance(raw.get("function"), dict) else None
        name = function.get("name") if function else raw.get("name")
        if not name:
            raise ValueError(f"Tool call is missing a name: {raw}")

        raw_arguments = function.get("arguments") if function else raw.get("arguments")
        arguments = parse_arguments(raw_arguments)
        if arguments is None:
            raise ValueError(f"Tool call '{name}' has malformed arguments")

        return cls(id=raw.get("id") or f"call_{cuid()}", name=name, arguments=arguments)

    def to_wire(self) -> dict[str, Any]:
        """Render in chat-completions format with JSON-encoded arguments."""
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


class Message(BaseModel):
    """One entry of conversation history."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    internal: bool = False
    provider_metadata: dict[str, Any] | None = None

    class Config:
        extra = "ignore"

    def to_wire(self) -> dict[str, Any]:
        """Render for the model endpoint, dropping local-only fields."""
        wire: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            wire["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id:
            wire["tool_call_id"] = self.tool_call_id
        return wire


class NormalizedResponse(BaseModel):
    """Canonical model reply produced by the normalizer."""

    content: str = ""
    display: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str | None = None
    usage: dict[str, Any] | None = None
    parse_error: bool = False
    tool_call_failure: bool = False
    tool_limit_reached_error: bool = False
    end_task: bool = False
    error_metadata: dict[str, Any] | None = None


TurnEventKind = Literal["assistant_message", "tool_result", "status"]


class TurnEvent(BaseModel):
    """Displayable progress emitted while a turn runs."""

    kind: TurnEventKind
    content: str = ""
    display: str = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False


@dataclass
class TurnUsage:
    """Token usage summed over every model request of one turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    requests: int = 0

    cache_read_input_tokens: int = 0

    def add(self, usage: dict[str, Any] | None) -> None:
        """Accumulate a provider usage record (chat-completions or Gemini keys)."""
        self.requests += 1
        if not usage:
            return
        input_tokens = usage.get("prompt_tokens", usage.get("promptTokenCount", usage.get("input_tokens"))) or 0
        output_tokens = (
            usage.get("completion_tokens", usage.get("candidatesTokenCount", usage.get("output_tokens"))) or 0
        )
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_tokens += usage.get("total_tokens", usage.get("totalTokenCount")) or input_tokens + output_tokens
        self.cache_read_input_tokens += usage.get("cache_read_input_tokens") or 0

    @property
    def cache_hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        if self.input_tokens == 0:
            return 0.0
        return (self.cache_read_input_tokens / self.input_tokens) * 100
