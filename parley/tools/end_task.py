"""end_task tool: lets the model stop the tool loop with a closing summary."""

from typing import Any

from pydantic import BaseModel, Field

from parley.tools.base import ExecutionContext, ToolDefinition

END_TASK_TOOL_NAME = "end_task"


class EndTaskInput(BaseModel):
    """Input schema for end_task."""

    summary: str = Field(default="Task completed", description="Brief summary of what was accomplished")
    success: bool = Field(default=True, description="Whether the task was completed successfully")


async def end_task_handler(params: EndTaskInput, context: ExecutionContext) -> dict[str, Any]:
    summary = params.summary or "Task completed"
    display = f"✅ **Task Completed**: {summary}" if params.success else f"⚠️ **Task Ended**: {summary}"
    return {"content": f"Task completion signaled: {summary}", "display": display}


def create_end_task_tool() -> ToolDefinition:
    return ToolDefinition(
        name=END_TASK_TOOL_NAME,
        description="Signal that the current task has been completed and tool execution should stop.",
        handler=end_task_handler,
        input_schema_class=EndTaskInput,
    )
