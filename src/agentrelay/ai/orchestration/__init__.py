"""Generation loop and tool dispatch."""

from .context import ExecutionContext
from .driver import (
    GenerationDriver,
    GenerationResult,
    GenerationStep,
    LanguageModel,
    ModelResponse,
    StreamDelta,
)
from .hooks import GenerationHooks, create_permission_hook

# Tool call parsing (embedded markers)
from .tool_call_parser import (
    normalize_tool_marker_text,
    parse_embedded_tool_calls,
)
from .tool_dispatcher import (
    INVALID_TOOL_NAME,
    ExecutorConfig,
    ToolDispatcher,
    resolve_tool_name,
)
from .tools import (
    SimpleTool,
    Tool,
    ToolCallRequest,
    ToolCallResult,
    ToolRegistry,
    ToolSpec,
)

__all__ = [
    # context.py
    "ExecutionContext",
    # driver.py
    "GenerationDriver",
    "GenerationResult",
    "GenerationStep",
    "LanguageModel",
    "ModelResponse",
    "StreamDelta",
    # hooks.py
    "GenerationHooks",
    "create_permission_hook",
    # tool_call_parser.py
    "normalize_tool_marker_text",
    "parse_embedded_tool_calls",
    # tool_dispatcher.py
    "INVALID_TOOL_NAME",
    "ExecutorConfig",
    "ToolDispatcher",
    "resolve_tool_name",
    # tools
    "SimpleTool",
    "Tool",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolRegistry",
    "ToolSpec",
]
