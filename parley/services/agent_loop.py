"""Agentic tool-calling loop: execute requested tools and re-ask the model until it stops."""

import json
from dataclasses import dataclass
from typing import Any

from parley.config import EngineConfig
from parley.errors import ToolError
from parley.models.llm import Message, NormalizedResponse, ToolCall, TurnEvent, TurnUsage
from parley.services.context import ConversationManager
from parley.services.correction import append_empty_content_correction, append_tool_failure_correction
from parley.services.events import TurnEventChannel
from parley.services.llm import LLMService
from parley.tools.base import JUSTIFICATION_FIELD, ExecutionContext
from parley.tools.end_task import END_TASK_TOOL_NAME
from parley.tools.registry import ToolRegistry
from parley.utils.cancellation import CancellationToken
from parley.utils.logging import get_logger, truncate_for_log

logger = get_logger(__name__)

TOOL_LIMIT_CONTENT = (
    "I reached the limit of tool operations for this request and stopped. "
    "Let me know how you would like to continue."
)
TOOL_LIMIT_DISPLAY = "⚠️ Tool execution limit reached"
TOOL_LIMIT_INSTRUCTION = (
    "The tool execution limit for this task has been reached and no further tools will run. "
    "In your next reply, explain to the user that the task is ending, summarize what was accomplished, "
    "and say what is left unfinished."
)
LOOP_GUARD_INSTRUCTION = (
    "The same tool call was repeated without making progress, so the task has been stopped. "
    "In your next reply, explain to the user that the task is ending, summarize what was accomplished, "
    "and say what is left unfinished."
)

REASON_REPEAT_LIMIT = "repeat_limit"
REASON_LOOP_GUARD = "loop_guard"


CallSignature = tuple[tuple[str, str], ...]


class LoopGuard:
    """Detects the model re-issuing an identical, already successful batch of calls.

    Failed batches are left to the repeat counter and reset the streak.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._signature: CallSignature | None = None
        self._streak = 0

    @staticmethod
    def signature(calls: list[ToolCall]) -> CallSignature:
        return tuple(
            (
                call.name,
                json.dumps(
                    {k: v for k, v in call.arguments.items() if k != JUSTIFICATION_FIELD}, sort_keys=True, default=str
                ),
            )
            for call in calls
        )

    def is_repeating(self, calls: list[ToolCall]) -> bool:
        return self.limit > 0 and self._streak >= self.limit and self.signature(calls) == self._signature

    def record(self, calls: list[ToolCall], succeeded: bool) -> None:
        if not succeeded:
            self._signature, self._streak = None, 0
            return
        signature = self.signature(calls)
        if signature == self._signature:
            self._streak += 1
        else:
            self._signature, self._streak = signature, 1


@dataclass
class ToolOutcome:
    """Result of one executed tool call."""

    call: ToolCall
    success: bool
    payload: Any
    message: Message


def _tool_display(call: ToolCall, payload: Any, success: bool) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("display"), str):
        return payload["display"]
    if not success:
        error = payload.get("error") if isinstance(payload, dict) else payload
        return f"❌ {call.name}: {error}"
    return f"✅ {call.name}"


class AgenticLoop:
    """Drives one turn from a reply with tool calls to a reply without any.

    A single repeat counter is shared by parse errors, malformed tool calls
    and failed tool executions; successful tool batches do not count.
    """

    def __init__(
        self,
        llm: LLMService,
        registry: ToolRegistry,
        conversation: ConversationManager,
        config: EngineConfig | None = None,
        events: TurnEventChannel | None = None,
        context: ExecutionContext | None = None,
        usage: TurnUsage | None = None,
    ):
        self.llm = llm
        self.registry = registry
        self.conversation = conversation
        self.config = config or EngineConfig()
        self.events = events
        self.context = context or ExecutionContext(
            user_id=conversation.user_id, world_id=conversation.world_id, conversation=conversation
        )
        if self.context.conversation is None:
            self.context.conversation = conversation
        self.usage = usage
        self.guard = LoopGuard(self.config.loop_guard_limit)
        self.repeat_count = 0
        self.iterations = 0

    def _emit(self, event: TurnEvent) -> None:
        if self.events is not None:
            self.events.emit(event)

    async def run(self, initial: NormalizedResponse, signal: CancellationToken) -> NormalizedResponse:
        """Run the loop starting from ``initial``.

        Returns:
            The final reply without tool calls, the end_task summary, or the
            tool-limit sentinel

        Raises:
            TurnCancelledError: If ``signal`` fires
            ModelEndpointError: If the transport fails after retries
        """
        current = initial
        logger.info(f"Starting tool loop with {len(initial.tool_calls)} tool calls")

        while True:
            signal.raise_if_cancelled()

            if current.parse_error or current.tool_call_failure:
                self.repeat_count += 1
                logger.warning(
                    f"Unusable reply inside tool loop (repeat {self.repeat_count}/{self.config.max_repeat}): "
                    f"{truncate_for_log(current.content)}"
                )
                if self.repeat_count >= self.config.max_repeat:
                    return self._limit_reached(REASON_REPEAT_LIMIT)
                if current.parse_error:
                    append_empty_content_correction(self.conversation, current)
                else:
                    append_tool_failure_correction(self.conversation, current)
                current = await self._request(signal)
                continue

            if not current.tool_calls:
                logger.info(f"Tool loop finished after {self.iterations} iterations")
                return self._finish(current)

            if self.guard.is_repeating(current.tool_calls):
                logger.warning(f"Loop guard tripped on repeated calls: {[call.name for call in current.tool_calls]}")
                return self._limit_reached(REASON_LOOP_GUARD)

            self.iterations += 1
            self.conversation.add_message("assistant", current.content, tool_calls=current.tool_calls)
            if current.content.strip():
                self._emit(TurnEvent(kind="assistant_message", content=current.content, display=current.display))

            outcomes = await self._execute_batch(current.tool_calls, signal)
            succeeded = all(outcome.success for outcome in outcomes)
            self.guard.record(current.tool_calls, succeeded)

            ended = next((o for o in outcomes if o.call.name == END_TASK_TOOL_NAME and o.success), None)
            if ended is not None:
                logger.info(f"Task ended by {END_TASK_TOOL_NAME} after {self.iterations} iterations")
                return self._end_task(ended)

            if not succeeded:
                self.repeat_count += 1
                logger.warning(f"Tool batch had failures (repeat {self.repeat_count}/{self.config.max_repeat})")
                if self.repeat_count >= self.config.max_repeat:
                    return self._limit_reached(REASON_REPEAT_LIMIT)

            current = await self._request(signal)

    async def _request(self, signal: CancellationToken) -> NormalizedResponse:
        return await self.llm.generate_response(self.conversation, signal, usage=self.usage)

    async def _execute_batch(self, calls: list[ToolCall], signal: CancellationToken) -> list[ToolOutcome]:
        """Run calls one at a time, recording each result before the next call starts."""
        outcomes = []
        for call in calls:
            signal.raise_if_cancelled()
            logger.debug(f"Executing tool: {call.name} with input: {truncate_for_log(call.arguments)}")

            try:
                result = await self.registry.execute_tool(call.name, call.arguments, self.context)
                payload, success = result.result, result.success
            except ToolError as e:
                logger.error(f"Tool {call.name} failed: {e.message}")
                payload = {"error": e.message, "tool": call.name, "arguments": call.arguments}
                success = False

            content = payload if isinstance(payload, str) else json.dumps(payload, default=str)
            message = self.conversation.record_tool_result(call.id, content, self.config.tool_output_inline_limit)
            self._emit(
                TurnEvent(
                    kind="tool_result",
                    content=content,
                    display=_tool_display(call, payload, success),
                    tool_call_id=call.id,
                    tool_name=call.name,
                    is_error=not success,
                )
            )
            outcomes.append(ToolOutcome(call=call, success=success, payload=payload, message=message))
        return outcomes

    def _finish(self, response: NormalizedResponse) -> NormalizedResponse:
        self.conversation.add_message("assistant", response.content)
        self._emit(TurnEvent(kind="assistant_message", content=response.content, display=response.display))
        return response

    def _end_task(self, outcome: ToolOutcome) -> NormalizedResponse:
        payload = outcome.payload if isinstance(outcome.payload, dict) else {}
        content = str(payload.get("content") or "Task completed")
        response = NormalizedResponse(
            content=content, display=str(payload.get("display") or content), tool_calls=[], end_task=True
        )
        return self._finish(response)

    def _limit_reached(self, reason: str) -> NormalizedResponse:
        instruction = LOOP_GUARD_INSTRUCTION if reason == REASON_LOOP_GUARD else TOOL_LIMIT_INSTRUCTION
        self.conversation.add_message("system", instruction)
        logger.warning(f"Tool loop stopped ({reason}) after {self.iterations} iterations, {self.repeat_count} repeats")

        response = NormalizedResponse(
            content=TOOL_LIMIT_CONTENT,
            display=TOOL_LIMIT_DISPLAY,
            tool_calls=[],
            tool_limit_reached_error=True,
            error_metadata={"reason": reason, "repeat_count": self.repeat_count},
        )
        self._emit(TurnEvent(kind="assistant_message", content=response.content, display=response.display))
        return response
