"""Model Context Protocol bridge (JSON-RPC 2.0 over child-process stdio)."""

from ..ai.errors import McpConnectionError, McpError, McpTimeoutError, McpToolError
from .client import McpClient, McpTool, McpTransport, StdioTransport, flatten_tool_result
from .protocol import PROTOCOL_VERSION, ConnectionState
from .router import McpRouter
from .server import McpResource, McpServer

__all__ = [
    "McpClient",
    "McpTool",
    "McpTransport",
    "StdioTransport",
    "McpServer",
    "McpResource",
    "McpRouter",
    "ConnectionState",
    "PROTOCOL_VERSION",
    "flatten_tool_result",
    "McpError",
    "McpTimeoutError",
    "McpConnectionError",
    "McpToolError",
]
