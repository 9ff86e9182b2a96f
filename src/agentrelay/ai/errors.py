"""Standardized error types for the agent runtime.

Tool-level failures are values (they become ``is_error`` results that are fed
back to the model); transport and protocol failures are raised to whoever
issued the operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence

__all__ = [
    "AgentRelayError",
    "ApiRequestError",
    "StreamError",
    "ErrorCode",
    "ToolError",
    "InvalidToolCallError",
    "InvalidArgumentsError",
    "ToolApprovalDenied",
    "McpError",
    "McpTimeoutError",
    "McpConnectionError",
    "McpToolError",
]


class AgentRelayError(Exception):
    """Base class for errors raised by agentrelay."""


# -----------------------------------------------------------------------------
# Transport Errors
# -----------------------------------------------------------------------------


class ApiRequestError(AgentRelayError):
    """Raised when an HTTP request fails permanently or exhausts its retries."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body
        self.attempts = attempts

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class StreamError(AgentRelayError):
    """Raised when an event stream produces too many consecutive malformed frames."""


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Constants for error codes used in tool responses."""

    INVALID_TOOL_CALL = "invalid_tool_call"
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TOOL_TIMEOUT = "tool_timeout"
    PERMISSION_DENIED = "permission_denied"
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Tool Errors
# -----------------------------------------------------------------------------


@dataclass
class ToolError(AgentRelayError):
    """Base exception class for structured tool errors.

    Handlers may raise it to hand the model a machine-readable payload
    instead of a bare message.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON tool responses."""
        result: dict[str, Any] = {
            "success": False,
            "error_type": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class InvalidToolCallError(ToolError):
    """The model asked for a tool that does not exist and could not be repaired."""

    error_code: str = field(default=ErrorCode.INVALID_TOOL_CALL)
    message: str = field(default="Requested tool is not available")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use one of the available tools listed above")

    requested_tool: str = field(default="")
    available_tools: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def for_tool(
        cls,
        requested_tool: str,
        available_tools: Sequence[str],
        *,
        close_matches: Sequence[str] = (),
    ) -> "InvalidToolCallError":
        available = sorted(available_tools)
        listing = ", ".join(available) if available else "(none)"
        if close_matches:
            suggestion = f"Did you mean: {', '.join(close_matches)}? Use the exact tool name."
        else:
            suggestion = "Please use one of the available tools with the exact name."
        return cls(
            message=f"Tool '{requested_tool}' is not available. Available tools: {listing}",
            suggestion=suggestion,
            requested_tool=requested_tool,
            available_tools=tuple(available),
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["requested_tool"] = self.requested_tool
        result["available_tools"] = list(self.available_tools)
        return result


@dataclass
class InvalidArgumentsError(ToolError):
    """Arguments failed schema validation."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Tool arguments do not match the declared schema")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the parameter schema and resend the call")


@dataclass
class ToolApprovalDenied(ToolError):
    """Raised when an approval hook refuses to run a tool."""

    error_code: str = field(default=ErrorCode.PERMISSION_DENIED)
    message: str = field(default="Tool execution denied")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    @classmethod
    def for_tool(cls, tool_name: str) -> "ToolApprovalDenied":
        return cls(message=f"Tool execution denied for: {tool_name}")


# -----------------------------------------------------------------------------
# Protocol Errors
# -----------------------------------------------------------------------------


class McpError(AgentRelayError):
    """Error-shaped JSON-RPC response, or a failed protocol operation."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"MCP error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class McpTimeoutError(McpError):
    """No response arrived before the request deadline."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(-32001, f"Timed out after {timeout:g}s waiting for '{method}'")
        self.method = method
        self.timeout = timeout


class McpConnectionError(McpError):
    """The server process exited or its streams closed."""

    def __init__(self, message: str) -> None:
        super().__init__(-32000, message)


class McpToolError(AgentRelayError):
    """A remote tool reported ``isError: true``."""

    def __init__(self, tool_name: str, text: str) -> None:
        super().__init__(text or f"Remote tool '{tool_name}' failed")
        self.tool_name = tool_name
        self.text = text
