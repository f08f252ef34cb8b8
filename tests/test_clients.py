"""Tests for model endpoint clients."""

import json
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from parley.clients.anthropic import (
    AnthropicClient,
    to_anthropic_messages,
    to_anthropic_tools,
    to_chat_completion,
)
from parley.clients.base import ModelClientConfig, TokenEstimator, is_retryable_status
from parley.clients.factory import create_model_client
from parley.clients.openai_compat import OpenAICompatibleClient
from parley.config import Settings
from parley.errors import ModelEndpointError

REPLY = {"choices": [{"message": {"role": "assistant", "content": "hi"}}], "model": "m"}


def make_client(handler, **config_overrides) -> OpenAICompatibleClient:
    config = ModelClientConfig(retry_delay=0.0, use_tiktoken=False, **config_overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleClient(api_key="test-key", base_url="http://llm.test/v1/", config=config, http_client=http)


class TestOpenAICompatibleClient:
    """Tests for the chat-completions client."""

    @pytest.mark.asyncio
    async def test_posts_payload_and_returns_json(self):
        """Test that the request carries model, messages, tools and auth."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=REPLY)

        client = make_client(handler)
        tools = [{"type": "function", "function": {"name": "x", "parameters": {}}}]

        data = await client.chat([{"role": "user", "content": "hello"}], tools)

        assert data == REPLY
        request = seen[0]
        assert str(request.url) == "http://llm.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o-mini"
        assert body["tools"] == tools
        assert body["tool_choice"] == "auto"

    def test_payload_without_tools(self):
        """Test that tool fields are omitted when no tools are offered."""
        client = make_client(lambda request: httpx.Response(200, json=REPLY))

        payload = client.build_payload([{"role": "user", "content": "hi"}], None, temperature=0.0)

        assert "tools" not in payload
        assert "tool_choice" not in payload
        assert payload["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_retries_transient_status(self):
        """Test that a 503 is retried and the later success returned."""
        statuses = iter([503, 429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            return httpx.Response(status, json=REPLY if status == 200 else {"error": "busy"})

        client = make_client(handler)

        assert await client.chat([{"role": "user", "content": "hi"}]) == REPLY

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        """Test that persistent server errors raise ModelEndpointError."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500, json={"error": "down"})

        client = make_client(handler, max_retries=3)

        with pytest.raises(ModelEndpointError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}])

        assert len(attempts) == 3
        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        """Test that a 400 fails immediately."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(400, json={"error": "bad request"})

        client = make_client(handler)

        with pytest.raises(ModelEndpointError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}])

        assert len(attempts) == 1
        assert exc_info.value.status_code == 400
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_message_without_role_rejected(self):
        """Test that malformed outbound messages are refused before sending."""
        client = make_client(lambda request: httpx.Response(200, json=REPLY))

        with pytest.raises(ValueError, match="without a role"):
            await client.chat([{"content": "hi"}])

    def test_retryable_statuses(self):
        """Test the retryable status classification."""
        assert all(is_retryable_status(code) for code in (408, 409, 429, 500, 502, 503))
        assert not any(is_retryable_status(code) for code in (400, 401, 403, 404, 422))


class TestTokenEstimator:
    """Tests for token counting and per-message validation."""

    def test_fallback_without_tiktoken(self):
        """Test that the disabled estimator uses a character estimate."""
        estimator = TokenEstimator(enabled=False)

        assert estimator.tokenizer is None
        assert estimator.count("a" * 400) == 100

    def test_validate_message_tokens(self):
        """Test message validation against a mocked tokenizer."""
        client = make_client(lambda request: httpx.Response(200, json=REPLY), max_message_tokens=1000)
        client.tokens.tokenizer = Mock()

        client.tokens.tokenizer.encode.return_value = ["token"] * 500
        client.validate_message_tokens("Short message")

        client.tokens.tokenizer.encode.return_value = ["token"] * 1500
        with pytest.raises(ValueError, match="under 1000 tokens"):
            client.validate_message_tokens("Very long message")


class TestAnthropicConversion:
    """Tests for chat-completions to Messages API conversion."""

    def test_messages_conversion(self):
        """Test system extraction, tool blocks and role merging."""
        messages = [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"id": "t1", "type": "function", "function": {"name": "list_documents", "arguments": '{"a": 1}'}}
                ],
            },
            {"role": "tool", "tool_call_id": "t1", "content": "{}"},
            {"role": "system", "content": "Reply in plain text."},
            {"role": "user", "content": "next"},
        ]

        system, converted = to_anthropic_messages(messages)

        assert system == "Be brief."
        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        tool_use = {"type": "tool_use", "id": "t1", "name": "list_documents", "input": {"a": 1}}
        assert converted[1]["content"] == [tool_use]
        assert converted[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "{}"},
            {"type": "text", "text": "System instruction: Reply in plain text."},
            {"type": "text", "text": "next"},
        ]

    def test_empty_text_is_dropped(self):
        """Test that empty user, system and assistant text never becomes a text block."""
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "   "},
            {"role": "system", "content": ""},
            {"role": "user", "content": ""},
            {"role": "assistant", "content": "hello"},
        ]

        _, converted = to_anthropic_messages(messages)

        assert converted == [
            {"role": "user", "content": [{"type": "text", "text": "hi"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "hello"}]},
        ]

    def test_tools_conversion_caches_last_tool(self):
        """Test that only the last tool definition carries cache control."""
        tools = [
            {"type": "function", "function": {"name": "a", "description": "A", "parameters": {"type": "object"}}},
            {"type": "function", "function": {"name": "b", "description": "B", "parameters": {"type": "object"}}},
        ]

        converted = to_anthropic_tools(tools)

        assert [t["name"] for t in converted] == ["a", "b"]
        assert "cache_control" not in converted[0]
        assert converted[1]["cache_control"] == {"type": "ephemeral", "ttl": "5m"}
        assert to_anthropic_tools(None) is None

    def test_reply_conversion(self):
        """Test that text and tool_use blocks become a chat-completions reply."""
        message = {
            "model": "claude",
            "stop_reason": "tool_use",
            "content": [
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "tu_1", "name": "read_document", "input": {"document_id": "doc_001"}},
            ],
            "usage": {"input_tokens": 20, "output_tokens": 7, "cache_read_input_tokens": 5},
        }

        reply = to_chat_completion(message)

        choice = reply["choices"][0]["message"]
        assert choice["content"] == "Let me look."
        assert choice["tool_calls"][0]["function"]["name"] == "read_document"
        assert json.loads(choice["tool_calls"][0]["function"]["arguments"]) == {"document_id": "doc_001"}
        assert reply["usage"]["total_tokens"] == 27
        assert reply["usage"]["cache_read_input_tokens"] == 5


class TestAnthropicClient:
    """Tests for AnthropicClient with a mocked SDK client."""

    @pytest.mark.asyncio
    async def test_chat_sends_system_and_tools(self):
        """Test that chat builds Messages API parameters and converts the reply."""
        sdk = Mock()
        response = Mock()
        response.model_dump.return_value = {
            "model": "claude",
            "content": [{"type": "text", "text": "Hello"}],
            "usage": {"input_tokens": 3, "output_tokens": 1},
        }
        sdk.messages.create = AsyncMock(return_value=response)
        client = AnthropicClient(config=ModelClientConfig(model="claude", use_tiktoken=False), client=sdk)

        reply = await client.chat(
            [{"role": "system", "content": "S"}, {"role": "user", "content": "hi"}],
            [{"type": "function", "function": {"name": "x", "description": "X", "parameters": {}}}],
        )

        kwargs = sdk.messages.create.call_args.kwargs
        assert kwargs["system"] == "S"
        assert kwargs["model"] == "claude"
        assert kwargs["tools"][0]["name"] == "x"
        assert reply["choices"][0]["message"]["content"] == "Hello"

    def test_requires_api_key(self):
        """Test that a missing key is reported at construction."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicClient()


class TestFactory:
    """Tests for transport selection from settings."""

    def test_openai_by_default(self):
        """Test that the default provider is the chat-completions client."""
        client = create_model_client(Settings(api_key="k", base_url="http://local/v1"))

        assert isinstance(client, OpenAICompatibleClient)
        assert client.base_url == "http://local/v1"

    def test_anthropic_provider(self):
        """Test that the anthropic provider builds the Messages API client."""
        client = create_model_client(Settings(provider="anthropic", api_key="k", model="claude"))

        assert isinstance(client, AnthropicClient)
        assert client.config.model == "claude"

    def test_settings_from_env(self):
        """Test that settings are read from environment variables."""
        env = {"PARLEY_PROVIDER": "anthropic", "ANTHROPIC_API_KEY": "secret", "PARLEY_CONTEXT_TOKENS": "8000"}
        with patch.dict("os.environ", env, clear=True):
            settings = Settings.from_env()

        assert settings.provider == "anthropic"
        assert settings.api_key == "secret"
        assert settings.context_tokens == 8000
        assert settings.model.startswith("claude")
