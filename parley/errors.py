"""Exception hierarchy shared across the service."""

from datetime import UTC, datetime
from typing import Any


class ParleyError(Exception):
    """Base error carrying structured data and a creation timestamp."""

    def __init__(self, message: str, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}
        self.timestamp = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs and API payloads."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class ToolError(ParleyError):
    """Base error for tool registration and execution."""

    def __init__(self, message: str, tool_name: str | None = None, data: dict[str, Any] | None = None):
        super().__init__(message, data)
        self.tool_name = tool_name


class ToolRegistrationError(ToolError):
    """A tool could not be registered or unregistered."""


class ToolNotFoundError(ToolError):
    """The named tool is not registered."""


class ToolPermissionError(ToolError):
    """The execution context lacks a permission the tool requires."""


class ToolDependencyError(ToolError):
    """A tool dependency is missing or disabled."""


class ToolExecutionError(ToolError):
    """A tool raised while executing."""

    def __init__(
        self,
        message: str,
        tool_name: str,
        execution_id: str,
        cause: BaseException | None = None,
        data: dict[str, Any] | None = None,
    ):
        super().__init__(message, tool_name, data)
        self.execution_id = execution_id
        self.cause = cause


class ModelEndpointError(ParleyError):
    """The model endpoint failed after retries or with a non-retryable status."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
        self.retryable = retryable


class TurnCancelledError(ParleyError):
    """The current turn was cancelled by its caller."""

    def __init__(self, message: str = "Process was cancelled"):
        super().__init__(message)
