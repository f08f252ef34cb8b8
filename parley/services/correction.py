"""Correction messages appended before re-asking the model after a bad reply."""

from typing import Any

from parley.models.llm import NormalizedResponse
from parley.services.context import ConversationManager

REJECTED_FALLBACK_CONTENT = "No usable content"
EMPTY_CONTENT_INSTRUCTION = (
    "Your previous response was rejected because it was empty or could not be parsed. "
    "Reply with a meaningful message for the user, or request a tool through the provided "
    "function-calling interface. A reply without tool calls ends the task."
)
TOOL_FAILURE_INSTRUCTION = (
    "Your last reply attempted to call a tool with invalid or malformed arguments. "
    "Provide corrected arguments if a tool call is still required, or respond in plain language without using tools."
)


def failed_function_name(response: NormalizedResponse) -> str | None:
    """Name of the tool whose call the provider rejected, when the metadata says."""
    metadata: dict[str, Any] = response.error_metadata or {}
    name = metadata.get("function_name")
    return name if isinstance(name, str) and name else None


def append_empty_content_correction(conversation: ConversationManager, response: NormalizedResponse | str) -> None:
    """Record the rejected reply as an internal assistant turn, then a system instruction.

    The assistant turn carries no tool calls so parity is unaffected.
    """
    content = response if isinstance(response, str) else response.content
    conversation.add_message(
        "assistant", f"(Response rejected: {content or REJECTED_FALLBACK_CONTENT})", metadata={"internal": True}
    )
    conversation.add_message("system", EMPTY_CONTENT_INSTRUCTION)


def append_tool_failure_correction(conversation: ConversationManager, response: NormalizedResponse) -> None:
    name = failed_function_name(response)
    if name:
        summary = (
            f'Previous tool call "{name}" failed because the provider reported malformed arguments. '
            "The tool call has been removed."
        )
    else:
        summary = (
            "Previous tool call failed because the provider reported malformed arguments. "
            "The malformed tool call has been removed."
        )
    conversation.add_message("assistant", summary, metadata={"internal": True})
    conversation.add_message("system", TOOL_FAILURE_INSTRUCTION)
