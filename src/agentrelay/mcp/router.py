"""Aggregate several MCP servers behind one tool namespace."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ..ai.errors import McpError
from ..ai.orchestration.tools import ToolRegistry
from .client import McpClient, McpTool

__all__ = ["McpRouter", "RoutedTool"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RoutedTool:
    """Where an exposed tool name actually lives."""

    client_name: str
    remote_name: str
    descriptor: Mapping[str, Any]


class McpRouter:
    """Route tool calls across named MCP clients.

    When two servers expose the same tool name, the later one is exposed as
    ``<client>_<tool>`` so every exposed name stays unique.
    """

    def __init__(self) -> None:
        self._clients: dict[str, McpClient] = {}
        self._routes: dict[str, RoutedTool] = {}

    @property
    def clients(self) -> dict[str, McpClient]:
        return dict(self._clients)

    async def add_client(self, name: str, client: McpClient) -> McpRouter:
        if name in self._clients:
            raise ValueError(f"MCP client '{name}' is already registered")
        client.name = client.name or name
        self._clients[name] = client
        await self.refresh_tools()
        return self

    async def connect(
        self,
        name: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        timeout: float = 30.0,
    ) -> McpClient:
        client = await McpClient.connect(command, args, env, timeout=timeout, name=name)
        await self.add_client(name, client)
        return client

    async def remove_client(self, name: str) -> bool:
        client = self._clients.pop(name, None)
        if client is None:
            return False
        try:
            await client.close()
        except Exception:
            LOGGER.debug("Closing MCP client %s failed", name, exc_info=True)
        await self.refresh_tools()
        return True

    async def refresh_tools(self) -> dict[str, RoutedTool]:
        routes: dict[str, RoutedTool] = {}
        for client_name, client in self._clients.items():
            if not client.is_alive():
                continue
            try:
                descriptors = await client.list_tools()
            except McpError as exc:
                LOGGER.warning("Failed to list tools from %s: %s", client_name, exc)
                continue
            for descriptor in descriptors:
                remote_name = descriptor.get("name")
                if not remote_name:
                    continue
                exposed = remote_name
                if exposed in routes:
                    exposed = f"{client_name}_{remote_name}"
                routes[exposed] = RoutedTool(client_name, remote_name, dict(descriptor))
        self._routes = routes
        return dict(routes)

    def list_tools(self) -> list[dict[str, Any]]:
        return [{**route.descriptor, "name": name} for name, route in self._routes.items()]

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> dict[str, Any]:
        route = self._routes.get(name)
        if route is None:
            raise McpError(-32602, f"Tool not found: {name}")
        client = self._clients.get(route.client_name)
        if client is None or not client.is_alive():
            raise McpError(-32000, f"Client '{route.client_name}' is not available")
        return await client.call_tool(route.remote_name, arguments)

    def as_tools(self) -> list[McpTool]:
        tools: list[McpTool] = []
        for exposed, route in self._routes.items():

            async def _invoke(_remote: str, arguments: dict[str, Any], _exposed: str = exposed) -> Any:
                return await self.call_tool(_exposed, arguments)

            tools.append(McpTool(route.descriptor, _invoke, name=exposed, server_name=route.client_name))
        return tools

    def register_tools(self, registry: ToolRegistry) -> list[str]:
        names: list[str] = []
        for tool in self.as_tools():
            registry.register(tool, metadata={"mcp_server": tool.server_name, "remote_name": tool.remote_name})
            names.append(tool.name)
        return names

    def status(self) -> dict[str, Any]:
        clients = []
        for name, client in self._clients.items():
            clients.append(
                {
                    "name": name,
                    "alive": client.is_alive(),
                    "server_info": dict(client.server_info),
                    "tools": sum(1 for route in self._routes.values() if route.client_name == name),
                }
            )
        return {
            "total_clients": len(self._clients),
            "active_clients": sum(1 for entry in clients if entry["alive"]),
            "total_tools": len(self._routes),
            "clients": clients,
        }

    async def close(self) -> None:
        for name, client in list(self._clients.items()):
            try:
                await client.close()
            except Exception:
                LOGGER.debug("Closing MCP client %s failed", name, exc_info=True)
        self._clients.clear()
        self._routes.clear()
