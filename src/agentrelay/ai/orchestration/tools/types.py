"""Tool system types for the orchestration pipeline.

This module defines the tool interface consumed by the dispatcher together
with the request/result records exchanged with the model transcript.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "ToolCategory",
    "SimpleTool",
    "ToolCallRequest",
    "ToolCallResult",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories for organization."""

    LOCAL = "local"
    REMOTE = "remote"
    DELEGATION = "delegation"
    SYSTEM = "system"


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
        category: Tool category for organization.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.LOCAL

    def parameter_schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}}

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema(),
            },
        }

    def to_mcp_tool(self) -> dict[str, Any]:
        """Convert to the MCP ``tools/list`` descriptor format."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.parameter_schema(),
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "category": self.category,
        }


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

# Synchronous tool handler
ToolHandler = Callable[..., Any]

# Asynchronous tool handler
AsyncToolHandler = Callable[..., Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations.

    Tools can be implemented as classes conforming to this protocol,
    or as simple functions registered with a ToolSpec.
    """

    @property
    def name(self) -> str:
        """Get the tool's unique name."""
        ...

    @property
    def spec(self) -> ToolSpec:
        """Get the tool's specification."""
        ...

    async def execute(self, arguments: Mapping[str, Any], context: Any = None) -> Any:
        """Execute the tool with the given arguments.

        Args:
            arguments: Tool arguments as a dictionary.
            context: Shared execution context, passed by reference.

        Returns:
            The tool's result (any type).

        Raises:
            Exception: If tool execution fails.
        """
        ...


# -----------------------------------------------------------------------------
# Simple Tool Implementation
# -----------------------------------------------------------------------------


def _accepts_context(handler: Callable[..., Any]) -> bool:
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return False
    for parameter in signature.parameters.values():
        if parameter.kind is inspect.Parameter.VAR_KEYWORD:
            return True
        if parameter.name == "context" and parameter.kind is not inspect.Parameter.POSITIONAL_ONLY:
            return True
    return False


@dataclass
class SimpleTool:
    """Simple tool implementation wrapping a callable.

    Handlers receive the parsed arguments; a handler that declares a
    ``context`` parameter also receives the shared execution context.

    Example:
        def my_handler(args: dict) -> str:
            return f"Hello, {args.get('name', 'World')}!"

        tool = SimpleTool(
            spec=ToolSpec(name="greet", description="Greet someone"),
            handler=my_handler,
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _wants_context: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._wants_context = _accepts_context(self.handler)

    @property
    def name(self) -> str:
        """Get the tool's name from its spec."""
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], context: Any = None) -> Any:
        """Execute the tool handler, awaiting it when it returns an awaitable."""
        if self._wants_context:
            result = self.handler(arguments, context=context)
        else:
            result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


# -----------------------------------------------------------------------------
# Call Records
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCallRequest:
    """A tool invocation requested by the model.

    Attributes:
        id: Provider-assigned call id used to correlate the result.
        name: Tool name as the model spelled it.
        arguments: Raw arguments, either a JSON string or a mapping.
    """

    id: str
    name: str
    arguments: str | Mapping[str, Any] = ""

    @classmethod
    def from_openai(cls, payload: Mapping[str, Any]) -> ToolCallRequest:
        """Accept both ``{id, function:{name, arguments}}`` and flat ``{id, name, arguments}``."""
        function = payload.get("function")
        if isinstance(function, Mapping):
            name = function.get("name") or ""
            arguments = function.get("arguments")
        else:
            name = payload.get("name") or ""
            arguments = payload.get("arguments")
        return cls(
            id=str(payload.get("id") or ""),
            name=str(name),
            arguments=arguments if arguments is not None else "",
        )

    def arguments_text(self) -> str:
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(dict(self.arguments), ensure_ascii=False, default=str)

    def to_openai(self) -> dict[str, Any]:
        """Render in the assistant-message ``tool_calls`` shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_text()},
        }


@dataclass(slots=True)
class ToolCallResult:
    """Outcome of one tool call; exactly one exists per request.

    Attributes:
        id: The originating call id.
        name: Name of the tool that actually ran (after repair).
        content: Text fed back to the model.
        is_error: Whether the call failed or could not be resolved.
        requested_name: Name as the model originally spelled it.
        arguments: Arguments after parsing and repair.
        duration_ms: Handler wall time.
    """

    id: str
    name: str
    content: str
    is_error: bool = False
    requested_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def repaired(self) -> bool:
        return bool(self.requested_name) and self.requested_name != self.name

    def to_message(self) -> dict[str, Any]:
        """Render as a transcript message."""
        return {
            "role": "tool",
            "tool_call_id": self.id,
            "name": self.name,
            "content": self.content,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.id,
            "name": self.name,
            "content": self.content,
            "is_error": self.is_error,
        }
