"""Transport selection."""

from parley.clients.anthropic import AnthropicClient
from parley.clients.base import ModelClient
from parley.clients.openai_compat import OpenAICompatibleClient
from parley.config import Settings


def create_model_client(settings: Settings) -> ModelClient:
    """Build the transport selected by ``settings.provider``."""
    if settings.provider == "anthropic":
        return AnthropicClient(api_key=settings.api_key, config=settings.client_config())
    return OpenAICompatibleClient(api_key=settings.api_key, base_url=settings.base_url, config=settings.client_config())
