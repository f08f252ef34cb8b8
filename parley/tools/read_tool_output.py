"""read_tool_output tool: page through tool results kept out of the active context."""

from typing import Any

from pydantic import BaseModel, Field

from parley.tools.base import ExecutionContext, ToolDefinition


class ReadToolOutputInput(BaseModel):
    """Input schema for read_tool_output."""

    tool_call_id: str = Field(description="Id of the tool call whose stored output should be read")
    start_line: int = Field(default=1, ge=1, description="First line to read (1-indexed, inclusive)")
    end_line: int | None = Field(
        default=None, ge=1, description="Last line to read (inclusive); defaults to the end of the output"
    )


async def read_tool_output_handler(params: ReadToolOutputInput, context: ExecutionContext) -> dict[str, Any]:
    if context.conversation is None:
        return {"error": "No conversation is attached to this tool call"}
    return context.conversation.read_tool_output(params.tool_call_id, params.start_line, params.end_line)


def create_read_tool_output_tool() -> ToolDefinition:
    return ToolDefinition(
        name="read_tool_output",
        description=(
            "Read a line range of a large tool result that was stored outside the conversation. "
            "Use the tool_call_id from the truncated result and request up to a few hundred lines at a time."
        ),
        handler=read_tool_output_handler,
        input_schema_class=ReadToolOutputInput,
    )
