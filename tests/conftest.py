"""Shared fixtures: a scripted model client and small tool registries."""

import json
from typing import Any

import pytest
from pydantic import BaseModel

from parley.config import EngineConfig
from parley.services.context import ConversationManager
from parley.services.llm import LLMService
from parley.tools import create_default_registry
from parley.tools.base import ExecutionContext, ToolDefinition
from parley.tools.documents import load_sample_index
from parley.tools.registry import ToolRegistry


class FakeModelClient:
    """Replays scripted raw replies and records every request.

    Once the script runs out the last reply is repeated. An Exception
    instance in the script is raised instead of returned.
    """

    def __init__(self, *replies: Any):
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def chat(self, messages, tools=None, **overrides):
        self.calls.append({"messages": messages, "tools": tools, **overrides})
        index = min(len(self.calls) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        return reply


def text_reply(content: str, usage: dict[str, Any] | None = None) -> dict[str, Any]:
    """A chat-completions reply carrying only text."""
    return {
        "model": "fake-model",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def tool_reply(*calls: tuple[str, dict[str, Any]], content: str = "") -> dict[str, Any]:
    """A chat-completions reply requesting ``calls`` as ``(name, arguments)`` pairs."""
    return {
        "model": "fake-model",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": content,
                    "tool_calls": [
                        {
                            "id": f"call_{index}_{name}",
                            "type": "function",
                            "function": {"name": name, "arguments": json.dumps(arguments)},
                        }
                        for index, (name, arguments) in enumerate(calls)
                    ],
                },
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


EMPTY_REPLY = {"content": "", "tool_calls": []}


class EchoInput(BaseModel):
    text: str


async def echo_handler(params: EchoInput, context: ExecutionContext) -> dict[str, Any]:
    return {"echo": params.text}


async def exploding_handler(params: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
    raise RuntimeError("backend unavailable")


def make_echo_tool(name: str = "echo") -> ToolDefinition:
    return ToolDefinition(
        name=name, description="Echo the given text back.", handler=echo_handler, input_schema_class=EchoInput
    )


def make_exploding_tool(name: str = "explode") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description="Always fails.",
        handler=exploding_handler,
        schema={"type": "object", "properties": {"target": {"type": "string"}}},
    )


@pytest.fixture
def engine_config():
    """Engine bounds with no waiting between correction attempts."""
    return EngineConfig(retry_delays=(0.0, 0.0))


@pytest.fixture
def registry():
    """Built-in tools over the sample documents plus an echo tool and a failing tool."""
    registry = create_default_registry(load_sample_index())
    registry.register_tool(make_echo_tool(), category="testing")
    registry.register_tool(make_exploding_tool(), category="testing")
    return registry


@pytest.fixture
def empty_registry():
    return ToolRegistry()


@pytest.fixture
def conversation():
    manager = ConversationManager("user-1", "world-1")
    manager.add_message("user", "What documents do we have?")
    return manager


def make_llm(registry: ToolRegistry, *replies: Any) -> tuple[LLMService, FakeModelClient]:
    client = FakeModelClient(*replies)
    return LLMService(client, registry, system_prompt="You are a test assistant."), client
