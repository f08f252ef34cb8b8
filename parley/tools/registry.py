"""Tool registry: registration, schema derivation and tracked execution."""

import copy
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from parley.errors import (
    ToolDependencyError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolPermissionError,
    ToolRegistrationError,
)
from parley.models.llm import cuid
from parley.tools.base import JUSTIFICATION_FIELD, ExecutionContext, Tool
from parley.utils.logging import get_logger, truncate_for_log

logger = get_logger(__name__)

ADMIN_ROLE = "gm"
JUSTIFICATION_SCHEMA = {
    "type": "string",
    "description": "Briefly explain why you are calling this tool and what you expect it to accomplish.",
}
HOOK_EVENTS = (
    "tool_registered",
    "tool_unregistered",
    "tool_enabled_changed",
    "before_execution",
    "after_execution",
    "execution_failed",
)

Hook = Callable[[dict[str, Any]], Any]


@dataclass
class ToolRegistration:
    """A registered tool plus its metadata and execution counters."""

    tool: Tool
    category: str = "general"
    dependencies: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    required: bool = False
    version: str = "1.0.0"
    enabled: bool = True
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_execution: datetime | None = None
    created: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def name(self) -> str:
        return self.tool.name

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.tool.name,
            "description": self.tool.description,
            "category": self.category,
            "dependencies": list(self.dependencies),
            "permissions": list(self.permissions),
            "tags": list(self.tags),
            "required": self.required,
            "version": self.version,
            "enabled": self.enabled,
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
        }


@dataclass
class ToolExecutionResult:
    """Outcome of ToolRegistry.execute_tool."""

    success: bool
    tool: str
    execution_id: str
    result: Any
    duration: float


def is_soft_error(result: Any) -> bool:
    """A tool may report failure by returning a dict with an ``error`` key."""
    return isinstance(result, dict) and bool(result.get("error"))


class ToolRegistry:
    """Registry for managing model-callable tools.

    One instance is created by the application and injected into the
    conversation engine; nothing here is process-global.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        self._dependents: dict[str, set[str]] = {}
        self._hooks: dict[str, list[Hook]] = {event: [] for event in HOOK_EVENTS}

    def register_tool(
        self,
        tool: Tool,
        *,
        category: str = "general",
        dependencies: list[str] | None = None,
        permissions: list[str] | None = None,
        tags: list[str] | None = None,
        required: bool = False,
        version: str = "1.0.0",
    ) -> ToolRegistration:
        """Register a tool.

        Raises:
            ToolRegistrationError: If the tool is incomplete, already registered,
                or depends on a tool that is not registered
        """
        if tool is None:
            raise ToolRegistrationError("Tool is required")

        name = getattr(tool, "name", None)
        if not name or not isinstance(name, str):
            raise ToolRegistrationError("Tool must have a name")
        if not getattr(tool, "description", None):
            raise ToolRegistrationError(f"Tool '{name}' must have a description", name)
        if not callable(getattr(tool, "execute", None)):
            raise ToolRegistrationError(f"Tool '{name}' must have an execute method", name)
        if name in self._tools:
            raise ToolRegistrationError(f"Tool '{name}' is already registered", name)

        dependencies = list(dependencies or [])
        missing = [dependency for dependency in dependencies if dependency not in self._tools]
        if missing:
            raise ToolRegistrationError(f"Tool '{name}' has unresolved dependencies: {', '.join(missing)}", name)

        registration = ToolRegistration(
            tool=tool,
            category=category,
            dependencies=dependencies,
            permissions=list(permissions or []),
            tags=list(tags or []),
            required=required,
            version=version,
        )
        self._tools[name] = registration
        for dependency in dependencies:
            self._dependents.setdefault(dependency, set()).add(name)

        logger.info(f"Registered tool: {name} (category: {category})")
        self._emit_hook("tool_registered", {"tool": name, "category": category})
        return registration

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool that nothing else depends on.

        Raises:
            ToolNotFoundError: If the tool is not registered
            ToolRegistrationError: If other tools depend on it
        """
        if name not in self._tools:
            raise ToolNotFoundError(f"Tool '{name}' not found", name)

        dependents = self._dependents.get(name, set())
        if dependents:
            raise ToolRegistrationError(
                f"Cannot unregister tool '{name}' - it has {len(dependents)} dependent tools: "
                f"{', '.join(sorted(dependents))}",
                name,
            )

        registration = self._tools.pop(name)
        for dependency in registration.dependencies:
            self._dependents.get(dependency, set()).discard(name)
        self._dependents.pop(name, None)

        logger.info(f"Unregistered tool: {name}")
        self._emit_hook("tool_unregistered", {"tool": name})
        return True

    def get_tool(self, name: str) -> Tool | None:
        registration = self._tools.get(name)
        return registration.tool if registration else None

    def get_tool_info(self, name: str) -> dict[str, Any] | None:
        registration = self._tools.get(name)
        return registration.as_dict() if registration else None

    def has_tool(self, name: str) -> bool:
        """Check if an enabled tool is registered under ``name``."""
        registration = self._tools.get(name)
        return registration is not None and registration.enabled

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def list_tools(
        self,
        category: str | None = None,
        enabled: bool | None = None,
        tags: list[str] | None = None,
        sort_by: str = "name",
    ) -> list[dict[str, Any]]:
        """List tool metadata, filtered by category, enabled flag and tags."""
        registrations = list(self._tools.values())
        if category is not None:
            registrations = [r for r in registrations if r.category == category]
        if enabled is not None:
            registrations = [r for r in registrations if r.enabled == enabled]
        if tags:
            registrations = [r for r in registrations if any(tag in r.tags for tag in tags)]

        infos = [r.as_dict() for r in registrations]
        if sort_by in ("execution_count", "success_count", "failure_count"):
            return sorted(infos, key=lambda info: info[sort_by], reverse=True)
        return sorted(infos, key=lambda info: str(info.get(sort_by) or ""))

    def list_categories(self) -> list[str]:
        return sorted({registration.category for registration in self._tools.values()})

    def set_tool_enabled(self, name: str, enabled: bool) -> None:
        """Enable or disable a tool.

        Raises:
            ToolNotFoundError: If the tool is not registered
            ToolRegistrationError: When disabling a required tool
        """
        registration = self._tools.get(name)
        if registration is None:
            raise ToolNotFoundError(f"Tool '{name}' not found", name)
        if registration.required and not enabled:
            raise ToolRegistrationError(f"Cannot disable required tool '{name}'", name)

        registration.enabled = enabled
        registration.updated = datetime.now(UTC)
        self._emit_hook("tool_enabled_changed", {"tool": name, "enabled": enabled})

    def get_tool_schemas(self) -> list[dict[str, Any]]:
        """Build function-calling schemas for every enabled tool.

        Each schema is forced to ``type: object`` and carries a required
        ``justification`` string argument.
        """
        schemas = []
        for registration in self._tools.values():
            if not registration.enabled:
                continue
            tool = registration.tool
            schemas.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": self._build_parameters(tool),
                    },
                }
            )
        return schemas

    def _build_parameters(self, tool: Tool) -> dict[str, Any]:
        raw_schema: Any = None
        if callable(getattr(tool, "get_json_schema", None)):
            raw_schema = tool.get_json_schema()
        elif isinstance(getattr(tool, "schema", None), dict):
            raw_schema = tool.schema

        parameters = copy.deepcopy(raw_schema) if isinstance(raw_schema, dict) else {}
        parameters["type"] = "object"
        if not isinstance(parameters.get("properties"), dict):
            parameters["properties"] = {}
        parameters["properties"].setdefault(JUSTIFICATION_FIELD, dict(JUSTIFICATION_SCHEMA))

        required = [item for item in parameters.get("required") or [] if isinstance(item, str)]
        if JUSTIFICATION_FIELD not in required:
            required.append(JUSTIFICATION_FIELD)
        parameters["required"] = required
        return parameters

    def validate_tool_execution(self, name: str, context: ExecutionContext | None = None) -> list[str]:
        """Return the reasons ``name`` cannot run in ``context`` (empty when it can)."""
        registration = self._tools.get(name)
        if registration is None:
            return [f"Tool '{name}' not found"]

        problems = []
        if not registration.enabled:
            problems.append(f"Tool '{name}' is disabled")
        role = context.role if context else None
        if registration.permissions and role != ADMIN_ROLE and role not in registration.permissions:
            problems.append(f"Tool '{name}' requires one of the roles: {', '.join(registration.permissions)}")
        for dependency in registration.dependencies:
            dependency_registration = self._tools.get(dependency)
            if dependency_registration is None:
                problems.append(f"Dependency '{dependency}' is not registered")
            elif not dependency_registration.enabled:
                problems.append(f"Dependency '{dependency}' is disabled")
        return problems

    def _check_execution(self, registration: ToolRegistration, context: ExecutionContext) -> None:
        name = registration.name
        if not registration.enabled:
            raise ToolDependencyError(f"Tool '{name}' is disabled", name)
        if registration.permissions and context.role != ADMIN_ROLE and context.role not in registration.permissions:
            raise ToolPermissionError(
                f"Role '{context.role}' may not use tool '{name}' (requires: {', '.join(registration.permissions)})",
                name,
            )
        for dependency in registration.dependencies:
            dependency_registration = self._tools.get(dependency)
            if dependency_registration is None or not dependency_registration.enabled:
                raise ToolDependencyError(f"Tool '{name}' dependency '{dependency}' is unavailable", name)

    async def execute_tool(
        self, name: str, arguments: dict[str, Any] | None = None, context: ExecutionContext | None = None
    ) -> ToolExecutionResult:
        """Execute a tool with permission and dependency checks and tracked stats.

        Args:
            name: Registered tool name
            arguments: Arguments produced by the model
            context: Caller identity and conversation

        Returns:
            ToolExecutionResult; ``success`` is False for soft-error results

        Raises:
            ToolNotFoundError: If no tool has this name
            ToolExecutionError: Wrapping any failure, with execution id and cause
        """
        registration = self._tools.get(name)
        if registration is None:
            raise ToolNotFoundError(f"Tool '{name}' not found", name)

        context = context or ExecutionContext()
        arguments = arguments or {}
        execution_id = cuid()
        started = time.perf_counter()

        registration.execution_count += 1
        registration.last_execution = datetime.now(UTC)
        self._emit_hook("before_execution", {"tool": name, "execution_id": execution_id, "arguments": arguments})

        try:
            self._check_execution(registration, context)
            result = await registration.tool.execute(arguments, context)
        except Exception as e:
            registration.failure_count += 1
            duration = time.perf_counter() - started
            message = _describe_failure(e)
            logger.error(f"Tool {name} failed ({execution_id}): {message}")
            self._emit_hook(
                "execution_failed", {"tool": name, "execution_id": execution_id, "error": message, "duration": duration}
            )
            raise ToolExecutionError(
                f"{name} execution failed: {message}",
                name,
                execution_id,
                cause=e,
                data={"execution_id": execution_id, "context": context.as_dict(), "cause": type(e).__name__},
            ) from e

        duration = time.perf_counter() - started
        success = not is_soft_error(result)
        if success:
            registration.success_count += 1
        else:
            registration.failure_count += 1
        logger.debug(f"Tool {name} finished in {duration:.3f}s: {truncate_for_log(result)}")
        self._emit_hook(
            "after_execution", {"tool": name, "execution_id": execution_id, "success": success, "duration": duration}
        )
        return ToolExecutionResult(
            success=success, tool=name, execution_id=execution_id, result=result, duration=duration
        )

    def get_stats(self) -> dict[str, Any]:
        registrations = list(self._tools.values())
        executions = sum(r.execution_count for r in registrations)
        successes = sum(r.success_count for r in registrations)
        return {
            "total_tools": len(registrations),
            "enabled_tools": sum(1 for r in registrations if r.enabled),
            "categories": self.list_categories(),
            "total_executions": executions,
            "total_successes": successes,
            "total_failures": sum(r.failure_count for r in registrations),
            "success_rate": successes / executions if executions else 0.0,
        }

    def add_hook(self, event: str, callback: Hook) -> None:
        if event not in self._hooks:
            raise ToolError(f"Unknown hook event: {event}")
        self._hooks[event].append(callback)

    def remove_hook(self, event: str, callback: Hook) -> bool:
        callbacks = self._hooks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def _emit_hook(self, event: str, payload: dict[str, Any]) -> None:
        for callback in list(self._hooks.get(event, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Hook for {event} failed: {e}")


def _describe_failure(error: Exception) -> str:
    if isinstance(error, PydanticValidationError):
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc']) or 'input'}: {item['msg']}" for item in error.errors()
        )
        return f"Invalid arguments - {problems}"
    if isinstance(error, ToolError):
        return error.message
    return str(error) or type(error).__name__
