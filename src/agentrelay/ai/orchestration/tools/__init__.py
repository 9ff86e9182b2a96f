"""Tool system for the orchestration pipeline.

Example:
    from agentrelay.ai.orchestration.tools import ToolRegistry, ToolSpec

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="greet", description="Greet someone"),
        handler=lambda args: f"Hello, {args.get('name', 'World')}!",
    )
"""

from .types import (
    Tool,
    ToolSpec,
    ToolHandler,
    AsyncToolHandler,
    SimpleTool,
    ToolCategory,
    ToolCallRequest,
    ToolCallResult,
)

from .registry import (
    ToolRegistry,
    ToolRegistration,
    DuplicateToolError,
    ToolNotFoundError,
)

__all__ = [
    # types.py
    "Tool",
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "SimpleTool",
    "ToolCategory",
    "ToolCallRequest",
    "ToolCallResult",
    # registry.py
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]
