"""Client side of the MCP bridge: talk JSON-RPC to a child-process tool server."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

from ..ai.errors import McpConnectionError, McpError, McpTimeoutError, McpToolError
from ..ai.orchestration.tools import ToolCategory, ToolRegistry, ToolSpec
from ..services import telemetry as telemetry_service
from .protocol import (
    METHOD_NOT_FOUND,
    PROTOCOL_VERSION,
    ConnectionState,
    decode_message,
    encode_message,
    is_notification,
    is_request,
    is_response,
    make_error,
    make_notification,
    make_request,
    make_response,
)

__all__ = [
    "McpTransport",
    "StdioTransport",
    "McpClient",
    "McpTool",
    "flatten_tool_result",
    "DEFAULT_CLIENT_INFO",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CLIENT_INFO: Mapping[str, str] = {"name": "agentrelay", "version": "0.1.0"}
_STREAM_LIMIT = 16 * 1024 * 1024


# -----------------------------------------------------------------------------
# Transports
# -----------------------------------------------------------------------------


class McpTransport(Protocol):
    """Line-oriented duplex channel to a tool server."""

    async def send(self, line: str) -> None:
        ...

    async def receive(self) -> str | None:
        """Return the next line, or ``None`` once the peer has closed."""
        ...

    def is_alive(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class StdioTransport:
    """Newline-delimited JSON over the standard streams of a child process."""

    def __init__(self, process: asyncio.subprocess.Process, *, kill_timeout: float = 2.0) -> None:
        self._process = process
        self._kill_timeout = kill_timeout
        self._write_lock = asyncio.Lock()

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        cwd: str | None = None,
        stderr: int | None = asyncio.subprocess.DEVNULL,
    ) -> StdioTransport:
        merged_env = dict(os.environ)
        if env:
            merged_env.update({str(key): str(value) for key, value in env.items()})
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=stderr,
                env=merged_env,
                cwd=cwd,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise McpConnectionError(f"Failed to start MCP server '{command}': {exc}") from exc
        LOGGER.debug("Spawned MCP server %s (pid %s)", command, process.pid)
        return cls(process)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    async def send(self, line: str) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise McpConnectionError("MCP server stdin is closed")
        async with self._write_lock:
            try:
                stdin.write(line.encode("utf-8") + b"\n")
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise McpConnectionError(f"MCP server pipe closed: {exc}") from exc

    async def receive(self) -> str | None:
        stdout = self._process.stdout
        if stdout is None:
            return None
        raw = await stdout.readline()
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace")

    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def close(self) -> None:
        process = self._process
        if process.returncode is not None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self._kill_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("MCP server pid %s ignored SIGTERM; killing", process.pid)
            process.kill()
            await process.wait()


# -----------------------------------------------------------------------------
# Result flattening
# -----------------------------------------------------------------------------


def flatten_tool_result(result: Any, tool_name: str = "") -> str:
    """Collapse a ``tools/call`` result into the single string fed to the model.

    Raises:
        McpToolError: When the server flagged the result with ``isError``.
    """

    if not isinstance(result, Mapping):
        return json.dumps(result, ensure_ascii=False, default=str)
    content = result.get("content")
    if content is None:
        return json.dumps(result, ensure_ascii=False, default=str)

    parts: list[str] = []
    for block in content if isinstance(content, list) else [content]:
        if not isinstance(block, Mapping):
            parts.append(str(block))
            continue
        block_type = block.get("type")
        if block_type == "text":
            parts.append(str(block.get("text", "")))
        elif block_type == "resource":
            resource = block.get("resource") or {}
            text = resource.get("text") if isinstance(resource, Mapping) else None
            parts.append(str(text) if text is not None else f"[resource: {resource.get('uri', '')}]")
        else:
            parts.append(f"[{block_type or 'unknown'}]")
    text = "\n".join(parts)
    if result.get("isError"):
        raise McpToolError(tool_name, text)
    return text


# -----------------------------------------------------------------------------
# Remote tool adapter
# -----------------------------------------------------------------------------


class McpTool:
    """Local tool whose execution is forwarded to a remote server."""

    def __init__(
        self,
        descriptor: Mapping[str, Any],
        invoke: Callable[[str, dict[str, Any]], Awaitable[Any]],
        *,
        name: str | None = None,
        server_name: str | None = None,
    ) -> None:
        self.remote_name = str(descriptor.get("name") or "")
        self.server_name = server_name
        self._invoke = invoke
        schema = descriptor.get("inputSchema") or {"type": "object", "properties": {}}
        self._spec = ToolSpec(
            name=name or self.remote_name,
            description=str(descriptor.get("description") or ""),
            parameters=dict(schema),
            category=ToolCategory.REMOTE,
        )

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def spec(self) -> ToolSpec:
        return self._spec

    async def execute(self, arguments: Mapping[str, Any], context: Any = None) -> str:
        result = await self._invoke(self.remote_name, dict(arguments))
        return flatten_tool_result(result, self.name)

    def __repr__(self) -> str:
        return f"McpTool(name={self.name!r}, remote={self.remote_name!r}, server={self.server_name!r})"


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class McpClient:
    """JSON-RPC session with one MCP server.

    Requests carry per-session monotonically increasing ids. Replies are
    matched by id, so concurrent callers may receive responses in any order;
    replies for other in-flight requests are stashed until collected.

    Example:
        async with await McpClient.connect("python", ["-m", "my_server"]) as client:
            tools = await client.list_tools()
            result = await client.call_tool("echo", {"message": "hi"})
    """

    def __init__(
        self,
        transport: McpTransport,
        *,
        timeout: float = 30.0,
        client_info: Mapping[str, str] | None = None,
        name: str | None = None,
    ) -> None:
        self._transport = transport
        self._timeout = timeout
        self._client_info = dict(client_info or DEFAULT_CLIENT_INFO)
        self._next_id = 0
        self._responses: dict[Any, dict[str, Any]] = {}
        self._pending: set[Any] = set()
        self._read_lock = asyncio.Lock()
        self.name = name
        self.state = ConnectionState.UNINITIALIZED
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None

    @classmethod
    async def connect(
        cls,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        timeout: float = 30.0,
        client_info: Mapping[str, str] | None = None,
        name: str | None = None,
    ) -> McpClient:
        """Spawn ``command`` and complete the initialize handshake."""

        transport = await StdioTransport.spawn(command, args, env)
        client = cls(transport, timeout=timeout, client_info=client_info, name=name or command)
        try:
            await client.initialize()
        except BaseException:
            await client.close()
            raise
        return client

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def next_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def initialize(self) -> dict[str, Any]:
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": dict(self._client_info),
                "capabilities": {},
            },
        )
        result = result if isinstance(result, dict) else {}
        self.server_info = dict(result.get("serverInfo") or {})
        self.capabilities = dict(result.get("capabilities") or {})
        self.protocol_version = result.get("protocolVersion")
        await self.notify("notifications/initialized")
        self.state = ConnectionState.INITIALIZED
        LOGGER.info(
            "Connected to MCP server %s %s",
            self.server_info.get("name", "<unnamed>"),
            self.server_info.get("version", ""),
        )
        return result

    def is_alive(self) -> bool:
        return self.state is not ConnectionState.CLOSED and self._transport.is_alive()

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        await self._transport.close()

    async def __aenter__(self) -> McpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def notify(self, method: str, params: Mapping[str, Any] | None = None) -> None:
        self._ensure_open()
        await self._transport.send(encode_message(make_notification(method, params)))

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for the matching response.

        Raises:
            McpError: When the server answers with an error object.
            McpTimeoutError: When no response arrives before the deadline.
            McpConnectionError: When the server goes away.
        """

        self._ensure_open()
        request_id = self.next_id()
        deadline = self._timeout if timeout is None else timeout
        telemetry_service.emit("mcp.request", {"method": method, "id": request_id, "server": self.name})
        self._pending.add(request_id)
        try:
            await self._transport.send(encode_message(make_request(method, params, id=request_id)))
            response = await asyncio.wait_for(self._await_response(request_id), deadline)
        except asyncio.TimeoutError:
            raise McpTimeoutError(method, deadline) from None
        finally:
            self._pending.discard(request_id)
            self._responses.pop(request_id, None)

        error = response.get("error")
        if error is not None:
            if isinstance(error, Mapping):
                raise McpError(int(error.get("code", -32603)), str(error.get("message", "")), error.get("data"))
            raise McpError(-32603, str(error))
        return response.get("result")

    async def _await_response(self, request_id: Any) -> dict[str, Any]:
        while True:
            if request_id in self._responses:
                return self._responses.pop(request_id)
            async with self._read_lock:
                if request_id in self._responses:
                    return self._responses.pop(request_id)
                line = await self._transport.receive()
                if line is None:
                    self.state = ConnectionState.CLOSED
                    raise McpConnectionError("MCP server closed the connection")
                await self._handle_line(line)

    async def _handle_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        try:
            message = decode_message(text)
        except ValueError:
            LOGGER.debug("Ignoring non-JSON line from MCP server: %.200s", text)
            return
        if is_response(message):
            message_id = message.get("id")
            if message_id not in self._pending:
                LOGGER.debug("Dropping response for request %s; nothing is waiting on it", message_id)
                return
            self._responses[message_id] = message
        elif is_request(message):
            await self._answer_server_request(message)
        elif is_notification(message):
            LOGGER.debug("MCP notification %s", message.get("method"))
        else:
            LOGGER.debug("Ignoring unexpected MCP message: %.200s", text)

    async def _answer_server_request(self, message: Mapping[str, Any]) -> None:
        if message.get("method") == "ping":
            reply = make_response({}, message.get("id"))
        else:
            reply = make_error(METHOD_NOT_FOUND, f"Method not found: {message.get('method')}", message.get("id"))
        await self._transport.send(encode_message(reply))

    def _ensure_open(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise McpConnectionError("MCP client is closed")

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self.request("tools/list", {})
        return list((result or {}).get("tools") or [])

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> dict[str, Any]:
        result = await self.request("tools/call", {"name": name, "arguments": dict(arguments or {})})
        return result if isinstance(result, dict) else {"content": [{"type": "text", "text": str(result)}]}

    async def list_resources(self) -> list[dict[str, Any]]:
        result = await self.request("resources/list", {})
        return list((result or {}).get("resources") or [])

    async def read_resource(self, uri: str) -> dict[str, Any]:
        result = await self.request("resources/read", {"uri": uri})
        return result if isinstance(result, dict) else {}

    # ------------------------------------------------------------------
    # Tool adaptation
    # ------------------------------------------------------------------

    async def as_tools(self, *, prefix: str | None = None) -> list[McpTool]:
        """Wrap every remote tool as a local tool forwarding to :meth:`call_tool`."""

        descriptors = await self.list_tools()
        tools: list[McpTool] = []
        for descriptor in descriptors:
            remote_name = descriptor.get("name")
            if not remote_name:
                continue
            local_name = f"{prefix}_{remote_name}" if prefix else None
            tools.append(McpTool(descriptor, self.call_tool, name=local_name, server_name=self.name))
        return tools

    async def register_tools(self, registry: ToolRegistry, *, prefix: str | None = None) -> list[str]:
        names: list[str] = []
        for tool in await self.as_tools(prefix=prefix):
            registry.register(tool, metadata={"mcp_server": self.name, "remote_name": tool.remote_name})
            names.append(tool.name)
        return names
