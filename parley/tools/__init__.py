"""Tools available to the assistant."""

from parley.tools.documents import DocumentIndex, create_list_documents_tool, create_read_document_tool
from parley.tools.end_task import create_end_task_tool
from parley.tools.read_tool_output import create_read_tool_output_tool
from parley.tools.registry import ToolRegistry


def create_default_registry(index: DocumentIndex | None = None) -> ToolRegistry:
    """Build a registry holding the built-in tools."""
    index = index or DocumentIndex()
    registry = ToolRegistry()
    registry.register_tool(create_read_tool_output_tool(), category="context", required=True)
    registry.register_tool(create_end_task_tool(), category="control", required=True)
    registry.register_tool(create_list_documents_tool(index), category="documents", tags=["read"])
    registry.register_tool(
        create_read_document_tool(index), category="documents", dependencies=["list_documents"], tags=["read"]
    )
    return registry


__all__ = ["ToolRegistry", "create_default_registry"]
