"""Chunk selection and prompts for rolling-summary compaction."""

import json
from collections.abc import Sequence

from parley.models.llm import Message

SUMMARY_HEADER = "[Conversation summary]"
SUMMARY_SYSTEM_PROMPT = (
    "You maintain a running summary of a conversation between a user and an assistant that uses tools. "
    "Reply with the updated summary only."
)
TRANSCRIPT_ENTRY_LIMIT = 600


def leading_system_count(messages: Sequence[Message]) -> int:
    return 1 if messages and messages[0].role == "system" else 0


def tool_group_end(messages: Sequence[Message], index: int) -> int:
    """Index just past the tool responses paired with the assistant message at ``index``."""
    message = messages[index]
    if message.role != "assistant" or not message.tool_calls:
        return index + 1

    call_ids = {call.id for call in message.tool_calls}
    end = index + 1
    while end < len(messages) and messages[end].role == "tool" and messages[end].tool_call_id in call_ids:
        end += 1
    return end


def adjust_chunk_boundary(messages: Sequence[Message], start: int, end: int) -> int:
    """Extend ``end`` so no assistant tool call is separated from its responses.

    Applying this to an already valid boundary returns the same boundary.
    """
    end = min(end, len(messages))
    index = start
    while index < end:
        group_end = tool_group_end(messages, index)
        if group_end > end:
            end = group_end
        index = group_end

    while end < len(messages) and messages[end].role == "tool":
        end += 1
    return end


def select_chunk(messages: Sequence[Message], chunk_size: int) -> tuple[int, int] | None:
    """Pick the oldest chunk eligible for summarization.

    Returns:
        ``(start, end)`` slice bounds, or None when too few messages remain.
        The most recent message is never included.
    """
    start = leading_system_count(messages)
    if len(messages) - start <= chunk_size:
        return None

    end = adjust_chunk_boundary(messages, start, start + chunk_size)
    if end >= len(messages):
        return None
    return start, end


def _render(message: Message) -> str:
    if message.role == "tool":
        text = message.content[:TRANSCRIPT_ENTRY_LIMIT]
        return f"Tool result ({message.tool_call_id}): {text}"
    lines = []
    if message.content:
        lines.append(f"{message.role.capitalize()}: {message.content[:TRANSCRIPT_ENTRY_LIMIT]}")
    for call in message.tool_calls or []:
        lines.append(f"Assistant called {call.name}({json.dumps(call.arguments)[:TRANSCRIPT_ENTRY_LIMIT]})")
    return "\n".join(lines)


def build_summary_prompt(existing_summary: str, chunk: Sequence[Message]) -> str:
    transcript = "\n".join(line for line in (_render(message) for message in chunk) if line)
    return (
        f"Existing summary:\n{existing_summary or '(none)'}\n\n"
        f"New messages to fold into the summary:\n{transcript}\n\n"
        "Rewrite the summary so it also covers the new messages. Keep decisions, names and ids of documents, "
        "tool results that matter for ongoing work, and tasks still open. Drop pleasantries and repetition."
    )


def format_summary_message(summary: str) -> str:
    return f"{SUMMARY_HEADER}\n{summary}"
