"""Conversation engine: one user turn from first model reply to final answer."""

from parley.config import EngineConfig
from parley.errors import TurnCancelledError
from parley.models.llm import NormalizedResponse, TurnEvent, TurnUsage
from parley.services.agent_loop import AgenticLoop
from parley.services.context import ConversationManager
from parley.services.correction import append_empty_content_correction, append_tool_failure_correction
from parley.services.events import Subscriber, TurnEventChannel, callback_channel
from parley.services.llm import LLMService
from parley.tools.base import ExecutionContext
from parley.tools.registry import ToolRegistry
from parley.utils.cancellation import CancellationToken
from parley.utils.logging import get_logger
from parley.utils.retry import build_retry_label, delay_with_signal, get_retry_delay

logger = get_logger(__name__)

GENERIC_FAILURE_CONTENT = (
    "Unable to generate a proper response after multiple attempts. Please try rephrasing your request."
)
GENERIC_FAILURE_DISPLAY = "❌ Unable to generate a proper response after multiple attempts."
TOOLS_DISABLED_INSTRUCTION = (
    "Tool calls are temporarily disabled. Provide a plain language response without using any tools."
)
TOOLS_UNAVAILABLE_NOTICE = "Note: Tool functionality was temporarily unavailable for this response."


def build_generic_failure_response(reason: str = "correction_exhausted") -> NormalizedResponse:
    return NormalizedResponse(
        content=GENERIC_FAILURE_CONTENT,
        display=GENERIC_FAILURE_DISPLAY,
        tool_calls=[],
        error_metadata={"reason": reason},
    )


class ConversationEngine:
    """Orchestrates a single turn for one conversation.

    The caller adds the user message first. The engine gets the first reply,
    runs the bounded pre-tool correction loop, falls back to a tool-free
    request when tool calls keep failing, and hands replies with tool calls
    to the agentic loop.
    """

    def __init__(
        self,
        conversation: ConversationManager,
        llm: LLMService,
        registry: ToolRegistry,
        config: EngineConfig | None = None,
        context: ExecutionContext | None = None,
    ):
        self.conversation = conversation
        self.llm = llm
        self.registry = registry
        self.config = config or EngineConfig()
        self.context = context
        self.last_usage = TurnUsage()

    async def process_turn(
        self,
        signal: CancellationToken | None = None,
        events: TurnEventChannel | None = None,
        on_assistant_message: Subscriber | None = None,
        on_tool_result: Subscriber | None = None,
    ) -> NormalizedResponse:
        """Process one user turn.

        Args:
            signal: Cancellation token checked before every model call and loop step
            events: Channel receiving assistant, tool-result and status events
            on_assistant_message: Called for every displayable assistant message
            on_tool_result: Called for every tool result

        Returns:
            The final response: the model's answer, the generic failure
            message, or the tool-limit sentinel

        Raises:
            TurnCancelledError: If ``signal`` fires
            ModelEndpointError: If the transport fails after retries
        """
        signal = signal or CancellationToken()
        if events is None:
            events = callback_channel(on_assistant_message, on_tool_result)
        elif on_assistant_message or on_tool_result:
            adapter = callback_channel(on_assistant_message, on_tool_result)
            events.subscribe(adapter.emit)

        usage = TurnUsage()
        self.last_usage = usage

        response = await self.llm.generate_response(self.conversation, signal, usage=usage)

        attempt = 1
        max_attempts = self.config.max_pre_tool_attempts
        while (response.parse_error or response.tool_call_failure) and attempt < max_attempts:
            if response.parse_error:
                logger.warning(f"Unparsable reply on attempt {attempt}/{max_attempts}, correcting")
                append_empty_content_correction(self.conversation, response)
            else:
                logger.warning(f"Malformed tool call on attempt {attempt}/{max_attempts}, correcting")
                append_tool_failure_correction(self.conversation, response)

            delay = get_retry_delay(attempt - 1, self.config.retry_delays)
            attempt += 1
            label = build_retry_label(attempt, max_attempts)
            events.emit(TurnEvent(kind="status", content=label, display=label))
            await delay_with_signal(delay, signal)
            response = await self.llm.generate_response(self.conversation, signal, usage=usage)

        if response.parse_error:
            logger.error(f"Giving up after {attempt} attempts without a usable reply")
            return self._deliver(build_generic_failure_response(), events)

        if response.tool_call_failure:
            return self._deliver(await self._run_tool_failure_fallback(response, signal, usage), events)

        if not response.tool_calls:
            return self._deliver(response, events)

        loop = AgenticLoop(
            self.llm,
            self.registry,
            self.conversation,
            config=self.config,
            events=events,
            context=self.context,
            usage=usage,
        )
        return await loop.run(response, signal)

    def _deliver(self, response: NormalizedResponse, events: TurnEventChannel) -> NormalizedResponse:
        self.conversation.add_message("assistant", response.content)
        events.emit(TurnEvent(kind="assistant_message", content=response.content, display=response.display))
        return response

    async def _run_tool_failure_fallback(
        self, failed: NormalizedResponse, signal: CancellationToken, usage: TurnUsage
    ) -> NormalizedResponse:
        """Ask once more with tools disabled; any problem yields the generic failure."""
        append_tool_failure_correction(self.conversation, failed)

        last = self.conversation.last_message()
        if last is None or last.role != "system" or last.content != TOOLS_DISABLED_INSTRUCTION:
            self.conversation.add_message("system", TOOLS_DISABLED_INSTRUCTION)

        try:
            fallback = await self.llm.generate_response(self.conversation, signal, tools_enabled=False, usage=usage)
        except TurnCancelledError:
            raise
        except Exception as e:
            logger.error(f"Tool-free fallback request failed: {e}", exc_info=True)
            return build_generic_failure_response("fallback_failed")

        if fallback.parse_error or fallback.tool_call_failure:
            logger.error("Tool-free fallback produced no usable reply")
            return build_generic_failure_response("fallback_failed")

        content = f"{fallback.content}\n\n{TOOLS_UNAVAILABLE_NOTICE}" if fallback.content else TOOLS_UNAVAILABLE_NOTICE
        display = f"{fallback.display}\n\n{TOOLS_UNAVAILABLE_NOTICE}" if fallback.display else content
        return fallback.model_copy(update={"content": content, "display": display, "tool_calls": []})
