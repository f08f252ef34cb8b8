"""Tiered conversation context: rolling summary, active window and tool output buffer."""

import json
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from parley.models.llm import Message, Role, ToolCall
from parley.services.compaction import (
    SUMMARY_HEADER,
    build_summary_prompt,
    format_summary_message,
    leading_system_count,
    select_chunk,
)
from parley.services.store import ConversationStore
from parley.utils.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 2
DEFAULT_MAX_TOKENS = 32_000
COMPACTION_RATIO = 0.67
DEFAULT_COMPACTION_OVERHEAD = 1_000
DEFAULT_CHUNK_SIZE = 5
MAX_COMPACTION_PASSES = 3
MAX_OUTPUT_CHARS = 10_000
PREVIEW_LINES = 20
PREVIEW_CHARS = 2_000
INTERRUPTED_TOOL_PAYLOAD = {
    "error": "Tool execution was interrupted or the conversation was restored from a previous session.",
    "stale": True,
}

Summarizer = Callable[[str], Awaitable[str]]
StateChangeCallback = Callable[["ConversationManager"], None]


@dataclass
class SanitizeReport:
    """What sanitize() changed."""

    stubbed: int = 0
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.stubbed or self.dropped)


def estimate_message_tokens(message: Message) -> int:
    """Word-count estimate for a message, including its serialized tool calls."""
    tokens = len(message.content.split())
    if message.tool_calls:
        tokens += len(json.dumps([call.to_wire() for call in message.tool_calls]).split())
    return tokens


def _stored_message(entry: dict[str, Any]) -> Message:
    tool_calls = []
    for raw_call in entry.get("tool_calls") or entry.get("toolCalls") or []:
        try:
            tool_calls.append(ToolCall.from_wire(raw_call))
        except ValueError as e:
            logger.warning(f"Dropping malformed stored tool call: {e}")
    return Message(
        role=entry["role"],
        content=entry.get("content") or "",
        tool_calls=tool_calls or None,
        tool_call_id=entry.get("tool_call_id") or entry.get("toolCallId"),
        internal=bool(entry.get("internal") or entry.get("_internal")),
        provider_metadata=entry.get("provider_metadata") or entry.get("providerMetadata"),
    )


class ConversationManager:
    """Owns the history of one (user, world) conversation.

    Mutating methods recompute ``session_tokens`` and then invoke the
    state-change callback synchronously. When a store is supplied and no
    callback is given, the callback persists state with ``save``.
    """

    def __init__(
        self,
        user_id: str,
        world_id: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        store: ConversationStore | None = None,
        on_state_change: StateChangeCallback | None = None,
        compaction_overhead: int = DEFAULT_COMPACTION_OVERHEAD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.user_id = user_id
        self.world_id = world_id
        self.max_tokens = max_tokens
        self.store = store
        self.compaction_overhead = compaction_overhead
        self.chunk_size = chunk_size

        self.messages: list[Message] = []
        self.rolling_summary = ""
        self.tool_output_buffer: dict[str, str] = {}
        self.session_tokens = 0

        if on_state_change is None and store is not None:
            on_state_change = ConversationManager.save
        self.on_state_change = on_state_change

    # Token accounting

    def estimate_tokens(self) -> int:
        total = sum(estimate_message_tokens(message) for message in self.messages)
        return total + math.ceil(len(self.rolling_summary) / 4)

    @property
    def compaction_threshold(self) -> int:
        return max(math.floor(self.max_tokens * COMPACTION_RATIO) - self.compaction_overhead, 0)

    def needs_compaction(self) -> bool:
        return self.session_tokens > self.compaction_threshold

    def _changed(self) -> None:
        self.session_tokens = self.estimate_tokens()
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(self)
        except Exception as e:
            logger.error(f"State change callback failed for {self.user_id}/{self.world_id}: {e}", exc_info=True)

    # Messages

    def add_message(
        self,
        role: Role,
        content: str | None,
        tool_calls: list[ToolCall | dict[str, Any]] | None = None,
        tool_call_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Append a message to the active window.

        Args:
            role: Message role
            content: Text content (None is stored as an empty string)
            tool_calls: Calls in ToolCall, nested wire or flat dict form
            tool_call_id: For tool messages, the id of the call answered
            metadata: Optional ``internal`` flag and ``provider_metadata``

        Returns:
            The stored message
        """
        metadata = metadata or {}
        calls = [ToolCall.from_wire(call) for call in tool_calls] if tool_calls else None
        message = Message(
            role=role,
            content=content or "",
            tool_calls=calls or None,
            tool_call_id=tool_call_id,
            internal=bool(metadata.get("internal", False)),
            provider_metadata=metadata.get("provider_metadata"),
        )
        self.messages.append(message)
        self._changed()
        return message

    def get_messages(self, system_prompt: str | None = None) -> list[Message]:
        """Build the outbound message list without mutating stored state.

        The rolling summary becomes a system message placed right after the
        leading system message, or first when there is none.
        """
        outbound = list(self.messages)
        if system_prompt:
            outbound.insert(0, Message(role="system", content=system_prompt))
        if self.rolling_summary:
            position = leading_system_count(outbound)
            outbound.insert(position, Message(role="system", content=format_summary_message(self.rolling_summary)))
        return outbound

    def get_wire_messages(self, system_prompt: str | None = None) -> list[dict[str, Any]]:
        return [message.to_wire() for message in self.get_messages(system_prompt)]

    def get_display_history(self) -> list[Message]:
        """User and assistant messages a person should see on reload."""
        return [
            message
            for message in self.messages
            if message.role in ("user", "assistant") and not message.internal and message.content
        ]

    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def clear(self) -> None:
        self.messages = []
        self.rolling_summary = ""
        self.tool_output_buffer = {}
        logger.info(f"Cleared conversation {self.user_id}/{self.world_id}")
        self._changed()

    # Compaction

    async def compact_history(self, summarize: Summarizer) -> bool:
        """Fold the oldest eligible chunk into the rolling summary.

        Either the whole chunk is replaced or nothing changes.

        Args:
            summarize: Sends a prompt to the model and returns its text

        Returns:
            True when a chunk was compacted
        """
        bounds = select_chunk(self.messages, self.chunk_size)
        if bounds is None:
            logger.debug("No eligible chunk for compaction")
            return False

        start, end = bounds
        chunk = self.messages[start:end]
        prompt = build_summary_prompt(self.rolling_summary, chunk)
        try:
            summary = await summarize(prompt)
        except Exception as e:
            logger.warning(f"Compaction skipped, summarization failed: {e}")
            return False

        summary = (summary or "").strip()
        if summary.startswith(SUMMARY_HEADER):
            summary = summary[len(SUMMARY_HEADER) :].strip()
        if not summary:
            logger.warning("Compaction skipped, summarization returned nothing")
            return False

        before = self.estimate_tokens()
        remaining = self.messages[:start] + self.messages[end:]
        projected = sum(estimate_message_tokens(message) for message in remaining) + math.ceil(len(summary) / 4)
        if projected >= before:
            logger.warning(f"Compaction skipped, summary would not shrink the context: {before} -> {projected} tokens")
            return False

        self.rolling_summary = summary
        self.messages = remaining
        self._changed()
        logger.info(f"Compacted {len(chunk)} messages: {before} -> {self.session_tokens} tokens")
        return True

    async def maybe_compact(self, summarize: Summarizer) -> bool:
        """Compact while the estimate is over threshold, for a bounded number of passes."""
        compacted = False
        for _ in range(MAX_COMPACTION_PASSES):
            if not self.needs_compaction():
                break
            if not await self.compact_history(summarize):
                break
            compacted = True
        return compacted

    # Tool-call parity

    def sanitize(self) -> SanitizeReport:
        """Restore tool-call/response parity.

        Missing responses get a stale-error stub placed directly after the
        owning assistant message; tool messages without an owning call in
        the preceding assistant message are dropped.
        """
        report = SanitizeReport()
        repaired: list[Message] = []
        index = 0
        total = len(self.messages)

        while index < total:
            message = self.messages[index]
            index += 1
            if message.role == "tool":
                report.dropped += 1
                continue

            repaired.append(message)
            if message.role != "assistant" or not message.tool_calls:
                continue

            call_ids = [call.id for call in message.tool_calls]
            answered: set[str] = set()
            responses: list[Message] = []
            while index < total and self.messages[index].role == "tool":
                response = self.messages[index]
                index += 1
                if response.tool_call_id in call_ids and response.tool_call_id not in answered:
                    answered.add(response.tool_call_id)
                    responses.append(response)
                else:
                    report.dropped += 1

            for call_id in call_ids:
                if call_id not in answered:
                    repaired.append(
                        Message(role="tool", content=json.dumps(INTERRUPTED_TOOL_PAYLOAD), tool_call_id=call_id)
                    )
                    report.stubbed += 1
            repaired.extend(responses)

        if report.changed:
            logger.warning(
                f"Sanitized conversation {self.user_id}/{self.world_id}: "
                f"{report.stubbed} stubbed, {report.dropped} dropped"
            )
            self.messages = repaired
            self._changed()
        return report

    # Tool output buffer

    def store_tool_output(self, tool_call_id: str, output: str) -> None:
        self.tool_output_buffer[tool_call_id] = output
        self._changed()

    def record_tool_result(self, tool_call_id: str, output: str, inline_limit: int) -> Message:
        """Append a tool result, buffering it whole when longer than ``inline_limit``."""
        if len(output) <= inline_limit:
            return self.add_message("tool", output, tool_call_id=tool_call_id)

        self.store_tool_output(tool_call_id, output)
        lines = output.splitlines()
        reference = {
            "truncated": True,
            "tool_call_id": tool_call_id,
            "total_lines": len(lines),
            "total_chars": len(output),
            "preview": "\n".join(lines[:PREVIEW_LINES])[:PREVIEW_CHARS],
            "note": "Full output stored. Call read_tool_output with this tool_call_id and a line range to read more.",
        }
        logger.info(f"Buffered {len(output)} chars of output for tool call {tool_call_id}")
        return self.add_message("tool", json.dumps(reference), tool_call_id=tool_call_id)

    def read_tool_output(self, tool_call_id: str, start_line: int = 1, end_line: int | None = None) -> dict[str, Any]:
        """Read a 1-indexed, inclusive line range of a buffered tool output."""
        output = self.tool_output_buffer.get(tool_call_id)
        if output is None:
            return {"error": f"No stored output for tool call '{tool_call_id}'"}

        lines = output.splitlines()
        total = len(lines)
        if total == 0:
            return {"error": f"Stored output for tool call '{tool_call_id}' is empty"}

        start = max(1, start_line)
        end = total if end_line is None else min(end_line, total)
        if start > total:
            return {"error": f"start_line {start} is past the end of the output ({total} lines)"}
        if end < start:
            return {"error": f"end_line {end_line} is before start_line {start}"}

        content = "\n".join(lines[start - 1 : end])
        truncated = len(content) > MAX_OUTPUT_CHARS
        if truncated:
            content = content[:MAX_OUTPUT_CHARS]

        return {
            "content": content,
            "display": f"Reading lines {start}-{end} of {total}",
            "total_lines": total,
            "showing": f"{start}-{end}",
            "has_more": end < total,
            "truncated": truncated,
        }

    # Persistence

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "active_messages": [message.model_dump(mode="json", exclude_none=True) for message in self.messages],
            "rolling_summary": self.rolling_summary,
            "tool_output_buffer": dict(self.tool_output_buffer),
            "session_tokens": self.session_tokens,
        }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace state from a persisted dict, migrating the legacy flat format."""
        if data.get("schema_version") == SCHEMA_VERSION:
            entries = data.get("active_messages") or []
            self.rolling_summary = data.get("rolling_summary") or ""
            self.tool_output_buffer = dict(data.get("tool_output_buffer") or {})
        else:
            logger.info(f"Migrating legacy conversation format for {self.user_id}/{self.world_id}")
            entries = data.get("messages") or []
            self.rolling_summary = ""
            self.tool_output_buffer = {}

        self.messages = [_stored_message(entry) for entry in entries if isinstance(entry, dict) and entry.get("role")]
        self.session_tokens = self.estimate_tokens()

    def detach(self) -> None:
        """Stop persisting; later mutations stay in memory only."""
        self.store = None
        self.on_state_change = None

    def save(self) -> None:
        if self.store is None:
            return
        self.store.set(self.user_id, self.world_id, self.to_dict())

    def load(self) -> bool:
        """Load persisted state and repair tool-call parity.

        Returns:
            True if stored state was found
        """
        if self.store is None:
            return False
        data = self.store.get(self.user_id, self.world_id)
        if not data:
            return False

        self.load_dict(data)
        self.sanitize()
        logger.info(
            f"Loaded conversation {self.user_id}/{self.world_id}: "
            f"{len(self.messages)} messages, {self.session_tokens} tokens"
        )
        return True
