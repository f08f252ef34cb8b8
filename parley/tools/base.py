"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel

if TYPE_CHECKING:
    from parley.services.context import ConversationManager

JUSTIFICATION_FIELD = "justification"


@dataclass
class ExecutionContext:
    """Who is calling a tool, and for which conversation."""

    user_id: str | None = None
    world_id: str | None = None
    role: str = "player"
    conversation: "ConversationManager | None" = None

    def as_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "world_id": self.world_id, "role": self.role}


@runtime_checkable
class Tool(Protocol):
    """Contract every registered tool satisfies."""

    name: str
    description: str

    def get_json_schema(self) -> dict[str, Any]: ...

    async def execute(self, arguments: dict[str, Any], context: ExecutionContext) -> Any: ...


ToolHandler = Callable[[Any, ExecutionContext], Awaitable[Any]]


@dataclass
class ToolDefinition:
    """Definition of a tool available to the model.

    The input schema comes from, in order of preference, a pydantic model,
    an explicit JSON schema, or a callable producing one on demand.
    """

    name: str
    description: str
    handler: ToolHandler
    input_schema_class: type[BaseModel] | None = None
    schema: dict[str, Any] | None = None
    schema_provider: Callable[[], dict[str, Any]] | None = None

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        if self.input_schema_class is not None:
            return self.input_schema_class.model_json_schema()
        if self.schema is not None:
            return self.schema
        if self.schema_provider is not None:
            return self.schema_provider()
        return {"type": "object", "properties": {}}

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel | dict[str, Any]:
        """Parse and validate tool input, ignoring the justification argument."""
        arguments = {key: value for key, value in raw_input.items() if key != JUSTIFICATION_FIELD}
        if self.input_schema_class is None:
            return arguments
        return self.input_schema_class.model_validate(arguments)

    async def execute(self, arguments: dict[str, Any], context: ExecutionContext) -> Any:
        return await self.handler(self.parse_input(arguments), context)
