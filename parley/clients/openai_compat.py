"""Chat-completions client for OpenAI-compatible endpoints."""

from typing import Any

import httpx

from parley.clients.base import (
    ModelClientConfig,
    RequestRateLimiter,
    TokenEstimator,
    is_retryable_status,
    request_with_retries,
)
from parley.errors import ModelEndpointError
from parley.utils.logging import get_logger

logger = get_logger(__name__)


class OpenAICompatibleClient:
    """Low-level chat-completions client with rate limiting and retries."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        config: ModelClientConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: Bearer token; local servers may not need one
            base_url: Endpoint root, without the /chat/completions suffix
            config: Client configuration
            http_client: Preconfigured httpx client (tests pass a MockTransport)
        """
        self.config = config or ModelClientConfig()
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.http = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        self.headers = headers
        self.rate_limiter = RequestRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)
        self.tokens = TokenEstimator(enabled=self.config.use_tiktoken)

    def build_payload(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None, **overrides: Any
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": overrides.get("model", self.config.model),
            "messages": messages,
            "max_tokens": overrides.get("max_tokens", self.config.max_tokens),
            "temperature": overrides.get("temperature", self.config.temperature),
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = overrides.get("tool_choice", "auto")
        return payload

    async def chat(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None, **overrides: Any
    ) -> dict[str, Any]:
        """Send one chat-completions request and return the decoded reply.

        Args:
            messages: Wire-format messages
            tools: Function schemas, or None to disable tool calling
            **overrides: model, max_tokens, temperature or tool_choice

        Returns:
            The raw JSON reply

        Raises:
            ModelEndpointError: If the request fails after retries
        """
        for message in messages:
            if "role" not in message:
                raise ValueError(f"Message without a role: {message}")

        payload = self.build_payload(messages, tools, **overrides)
        estimated_tokens = self.tokens.count_messages(messages, tools)
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier=self.base_url)

        logger.debug(
            f"Requesting {payload['model']} with {len(messages)} messages, {len(tools) if tools else 0} tools, "
            f"~{estimated_tokens} tokens"
        )
        data = await request_with_retries(lambda: self._post(payload), self.config, self._classify)
        if not isinstance(data, dict):
            raise ModelEndpointError(f"Unexpected response body type: {type(data).__name__}")
        return data

    async def _post(self, payload: dict[str, Any]) -> Any:
        response = await self.http.post(f"{self.base_url}/chat/completions", json=payload, headers=self.headers)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _classify(error: Exception) -> tuple[bool, float | None, int | None]:
        if isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code
            retry_after = None
            header = error.response.headers.get("retry-after")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            return is_retryable_status(status_code), retry_after, status_code
        if isinstance(error, httpx.TransportError):
            return True, None, None
        return False, None, None

    def validate_message_tokens(self, message: str) -> None:
        self.tokens.validate_message(message, self.config.max_message_tokens)

    async def aclose(self) -> None:
        await self.http.aclose()
