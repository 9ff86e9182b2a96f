"""Server side of the MCP bridge: expose local tools and resources over stdio."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import sys
from dataclasses import dataclass
from typing import IO, Any, Awaitable, Callable, Mapping

from ..ai.orchestration.tools import SimpleTool, Tool, ToolHandler, ToolRegistry, ToolSpec
from .protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    ConnectionState,
    decode_message,
    encode_message,
    make_error,
    make_response,
)

__all__ = ["McpServer", "McpResource", "InvalidParamsError"]

LOGGER = logging.getLogger(__name__)

ResourceReader = Callable[[], Any]


class InvalidParamsError(Exception):
    """Raised by handlers when request params are missing or refer to unknown objects."""


@dataclass(slots=True)
class McpResource:
    """A readable resource advertised through ``resources/list``."""

    uri: str
    name: str
    reader: ResourceReader
    description: str = ""
    mime_type: str = "text/plain"

    def descriptor(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


class McpServer:
    """Serve tools and resources over newline-delimited JSON-RPC.

    Each handled request yields exactly one response line; notifications
    (messages without an ``id``) never do. Handler failures are reported as
    JSON-RPC error objects tagged with the original id.

    Args:
        name: Server name reported by ``initialize``.
        version: Server version reported by ``initialize``.
        strict_initialization: Reject requests other than ``initialize`` until
            the client has sent ``notifications/initialized``.
    """

    def __init__(
        self,
        name: str = "agentrelay-server",
        version: str = "0.1.0",
        *,
        strict_initialization: bool = False,
    ) -> None:
        self.name = name
        self.version = version
        self.strict_initialization = strict_initialization
        self.state = ConnectionState.UNINITIALIZED
        self._tools: dict[str, Tool] = {}
        self._resources: dict[str, McpResource] = {}
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[Any]]] = {
            "initialize": self._handle_initialize,
            "notifications/initialized": self._handle_initialized,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/read": self._handle_resources_read,
        }

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_tool(self, tool: Tool | ToolSpec, handler: ToolHandler | None = None) -> McpServer:
        if isinstance(tool, ToolSpec):
            if handler is None:
                raise ValueError("A handler is required when registering a ToolSpec")
            tool = SimpleTool(spec=tool, handler=handler)
        self._tools[tool.name] = tool
        return self

    def add_registry(self, registry: ToolRegistry) -> McpServer:
        for name in registry.list_names():
            self._tools[name] = registry.get_required(name)
        return self

    def add_resource(
        self,
        uri: str,
        name: str,
        reader: ResourceReader,
        *,
        description: str = "",
        mime_type: str = "text/plain",
    ) -> McpServer:
        self._resources[uri] = McpResource(
            uri=uri, name=name, reader=reader, description=description, mime_type=mime_type
        )
        return self

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_message(self, line: str) -> dict[str, Any] | None:
        """Process one JSON-RPC line and return the response, or None for notifications."""

        try:
            message = decode_message(line)
        except ValueError:
            return make_error(PARSE_ERROR, "Parse error", None)

        if not isinstance(message, dict):
            return make_error(INVALID_REQUEST, "Invalid Request", None)
        message_id = message.get("id")
        is_notification = "id" not in message
        method = message.get("method")
        if not isinstance(method, str) or not method:
            return make_error(INVALID_REQUEST, "Invalid Request", message_id)

        handler = self._handlers.get(method)
        if handler is None:
            if is_notification:
                LOGGER.debug("Ignoring unknown notification %s", method)
                return None
            return make_error(METHOD_NOT_FOUND, f"Method not found: {method}", message_id)

        if (
            self.strict_initialization
            and self.state is not ConnectionState.INITIALIZED
            and method not in ("initialize", "notifications/initialized")
        ):
            if is_notification:
                return None
            return make_error(INVALID_REQUEST, "Server not initialized", message_id)

        params = message.get("params") or {}
        if not isinstance(params, Mapping):
            if is_notification:
                return None
            return make_error(INVALID_PARAMS, "Params must be an object", message_id)

        try:
            result = await handler(params)
        except InvalidParamsError as exc:
            if is_notification:
                return None
            return make_error(INVALID_PARAMS, str(exc), message_id)
        except Exception as exc:
            LOGGER.exception("MCP handler %s failed", method)
            if is_notification:
                return None
            return make_error(INTERNAL_ERROR, str(exc) or type(exc).__name__, message_id)

        if is_notification:
            return None
        return make_response(result, message_id)

    def process_message(self, line: str) -> dict[str, Any] | None:
        """Synchronous wrapper around :meth:`handle_message` for callers without a loop."""

        return asyncio.run(self.handle_message(line))

    async def serve(self, reader: IO[str] | None = None, writer: IO[str] | None = None) -> None:
        """Read requests until EOF, writing one flushed line per response."""

        source = reader or sys.stdin
        sink = writer or sys.stdout
        LOGGER.info("MCP server '%s' listening on stdio", self.name)
        try:
            while True:
                line = await asyncio.to_thread(source.readline)
                if not line:
                    break
                if not line.strip():
                    continue
                response = await self.handle_message(line)
                if response is not None:
                    sink.write(encode_message(response) + "\n")
                    sink.flush()
        finally:
            self.state = ConnectionState.CLOSED
            LOGGER.info("MCP server '%s' stopped", self.name)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_initialize(self, params: Mapping[str, Any]) -> dict[str, Any]:
        client_info = params.get("clientInfo") or {}
        LOGGER.debug("Initialize from %s", client_info.get("name", "<unknown client>"))
        capabilities: dict[str, Any] = {}
        if self._tools:
            capabilities["tools"] = {}
        if self._resources:
            capabilities["resources"] = {}
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": self.name, "version": self.version},
            "capabilities": capabilities,
        }

    async def _handle_initialized(self, params: Mapping[str, Any]) -> None:
        self.state = ConnectionState.INITIALIZED

    async def _handle_tools_list(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {"tools": [tool.spec.to_mcp_tool() for tool in self._tools.values()]}

    async def _handle_tools_call(self, params: Mapping[str, Any]) -> dict[str, Any]:
        tool_name = params.get("name")
        if not tool_name:
            raise InvalidParamsError("Missing tool name")
        tool = self._tools.get(tool_name)
        if tool is None:
            raise InvalidParamsError(f"Unknown tool: {tool_name}")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, Mapping):
            raise InvalidParamsError("Tool arguments must be an object")

        try:
            result = await tool.execute(dict(arguments))
        except Exception as exc:
            LOGGER.debug("Tool %s failed", tool_name, exc_info=True)
            return {
                "content": [{"type": "text", "text": f"Error: {exc}"}],
                "isError": True,
            }
        if isinstance(result, Mapping) and "content" in result:
            return dict(result)
        return {"content": [{"type": "text", "text": _as_text(result)}]}

    async def _handle_resources_list(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {"resources": [resource.descriptor() for resource in self._resources.values()]}

    async def _handle_resources_read(self, params: Mapping[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        resource = self._resources.get(uri) if uri else None
        if resource is None:
            raise InvalidParamsError(f"Unknown resource: {uri}")
        content = resource.reader()
        if inspect.isawaitable(content):
            content = await content
        return {
            "contents": [
                {"uri": resource.uri, "mimeType": resource.mime_type, "text": _as_text(content)}
            ]
        }


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
