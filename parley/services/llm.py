"""LLM service: one model request for a conversation, normalized."""

from parley.clients.base import ModelClient
from parley.models.llm import NormalizedResponse, TurnUsage
from parley.services.compaction import SUMMARY_SYSTEM_PROMPT
from parley.services.context import ConversationManager
from parley.services.normalizer import normalize_response
from parley.tools.registry import ToolRegistry
from parley.utils.cancellation import CancellationToken, run_cancellable
from parley.utils.logging import get_logger

logger = get_logger(__name__)


class LLMService:
    """Sends conversation state to the model endpoint and normalizes the reply.

    Shared by every conversation; per-turn state (cancellation, usage) is
    passed in by the caller.
    """

    def __init__(self, client: ModelClient, registry: ToolRegistry, system_prompt: str | None = None):
        """Initialize LLM service.

        Args:
            client: Model endpoint transport
            registry: Tools offered to the model
            system_prompt: Prepended to every request
        """
        self.client = client
        self.registry = registry
        self.system_prompt = system_prompt

    def validate_message(self, message: str) -> None:
        """Apply the transport's per-message token limit, when it has one.

        Raises:
            ValueError: If message exceeds token limit
        """
        validate = getattr(self.client, "validate_message_tokens", None)
        if validate is not None:
            validate(message)

    async def generate_response(
        self,
        conversation: ConversationManager,
        signal: CancellationToken,
        tools_enabled: bool = True,
        usage: TurnUsage | None = None,
    ) -> NormalizedResponse:
        """Request the next assistant reply for ``conversation``.

        Compaction runs first when the conversation is over its token threshold.

        Args:
            conversation: History to send
            signal: Aborts the request when cancelled
            tools_enabled: False sends no tool schemas and disables inline tool calls
            usage: Accumulates token usage for the turn

        Returns:
            Normalized reply

        Raises:
            TurnCancelledError: If ``signal`` fires
            ModelEndpointError: If the transport fails after retries
        """
        signal.raise_if_cancelled()
        await conversation.maybe_compact(lambda prompt: self.summarize(prompt, signal))

        messages = conversation.get_wire_messages(self.system_prompt)
        tools = self.registry.get_tool_schemas() if tools_enabled else None
        logger.info(
            f"Requesting model reply for {conversation.user_id}/{conversation.world_id}: "
            f"{len(messages)} messages, {len(tools) if tools else 0} tools, ~{conversation.session_tokens} tokens"
        )

        raw = await run_cancellable(self.client.chat(messages, tools or None), signal)
        response = normalize_response(raw, self.registry.has_tool if tools_enabled else None)
        if usage is not None:
            usage.add(response.usage)

        logger.debug(
            f"Model reply - tool calls: {len(response.tool_calls)}, parse error: {response.parse_error}, "
            f"tool call failure: {response.tool_call_failure}"
        )
        return response

    async def summarize(self, prompt: str, signal: CancellationToken) -> str:
        """Ask the model for a summary; an unusable reply yields an empty string."""
        messages = [{"role": "system", "content": SUMMARY_SYSTEM_PROMPT}, {"role": "user", "content": prompt}]
        raw = await run_cancellable(self.client.chat(messages, None), signal)
        response = normalize_response(raw)
        if response.parse_error or response.tool_call_failure:
            return ""
        return response.content
