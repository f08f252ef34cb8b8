"""Shared pieces of the model endpoint clients: config, rate limiting, retries."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import tiktoken
from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from parley.errors import ModelEndpointError
from parley.utils.logging import get_logger
from parley.utils.retry import calculate_backoff

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429})


class ModelClient(Protocol):
    """A transport that returns a raw endpoint reply for the normalizer."""

    async def chat(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None, **overrides: Any
    ) -> dict[str, Any]: ...


@dataclass
class ModelClientConfig:
    """Configuration for model endpoint clients."""

    model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    temperature: float = 0.2
    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    timeout: float = 120.0

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000

    # Per-message validation and tokenizer use
    max_message_tokens: int = 2000
    use_tiktoken: bool = True


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


class RequestRateLimiter:
    """Per-client request and token throttling using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def _wait_for_window(self, limit: RateLimitItem, identifier: str, cost: int, label: str) -> None:
        if self.limiter.hit(limit, identifier, cost=cost):
            return
        window_stats = self.limiter.get_window_stats(limit, identifier)
        wait_time = max(0.0, window_stats.reset_time - time.time())
        if wait_time > 0:
            logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "model") -> None:
        """Wait until the request fits the request and token windows."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")
        await self._wait_for_window(self.request_limit, identifier, 1, "Request")
        await self._wait_for_window(self.token_limit, f"{identifier}_tokens", max(estimated_tokens, 1), "Token")


class TokenEstimator:
    """tiktoken-backed token counting with a chars/4 fallback."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._tokenizer: tiktoken.Encoding | None = None
        self._loaded = not enabled

    @property
    def tokenizer(self) -> tiktoken.Encoding | None:
        if not self._loaded:
            self._loaded = True
            try:
                self._tokenizer = tiktoken.encoding_for_model("gpt-4")
            except Exception as e:
                logger.warning(f"tiktoken unavailable, falling back to character estimate: {e}")
                self._tokenizer = None
        return self._tokenizer

    @tokenizer.setter
    def tokenizer(self, value: tiktoken.Encoding | None) -> None:
        self._tokenizer = value
        self._loaded = True

    def count(self, text: str) -> int:
        tokenizer = self.tokenizer
        try:
            return len(tokenizer.encode(text)) if tokenizer else len(text) // 4
        except Exception:
            return len(text) // 4

    def validate_message(self, message: str, limit: int) -> None:
        """Validate that a user message fits the per-message token limit.

        Raises:
            ValueError: If message exceeds token limit
        """
        token_count = self.count(message)
        if token_count > limit:
            logger.warning(f"Rejected message of {token_count} tokens (limit {limit})")
            raise ValueError(f"Your message is too long. Please keep messages under {limit} tokens.")

    def count_messages(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None) -> int:
        text = "".join(str(message.get("content") or "") for message in messages)
        if tools:
            text += str(tools)
        return self.count(text)


async def request_with_retries(
    call: Callable[[], Awaitable[T]],
    config: ModelClientConfig,
    classify: Callable[[Exception], tuple[bool, float | None, int | None]],
) -> T:
    """Run ``call`` with exponential backoff and jitter on transient failures.

    Args:
        call: Issues one request
        config: Retry budget and delays
        classify: Maps an exception to ``(retryable, retry_after, status_code)``

    Raises:
        ModelEndpointError: On a non-retryable failure or once retries are exhausted
    """
    last_error: Exception | None = None
    last_status: int | None = None

    for attempt in range(config.max_retries):
        try:
            return await call()
        except ModelEndpointError:
            raise
        except Exception as e:
            retryable, retry_after, status_code = classify(e)
            last_error, last_status = e, status_code
            if not retryable:
                raise ModelEndpointError(f"Model endpoint request failed: {e}", status_code) from e
            if attempt >= config.max_retries - 1:
                break

            delay = calculate_backoff(attempt, config.retry_delay, config.max_retry_delay)
            if retry_after is not None and retry_after <= config.max_retry_delay:
                delay = max(delay, retry_after)
            logger.warning(
                f"Transient model endpoint failure (status {status_code}), retry {attempt + 1}/"
                f"{config.max_retries - 1} in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)

    raise ModelEndpointError(
        f"Failed to complete request after {config.max_retries} attempts: {last_error}", last_status, retryable=True
    ) from last_error
