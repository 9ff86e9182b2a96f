"""Tool registry for the orchestration pipeline.

Registries are explicit objects passed by reference into the dispatcher,
driver and delegation stack. Local and bridged-remote registries are merged
with :meth:`ToolRegistry.compose` before being handed to a driver.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        name: Tool name.
        tool: The tool implementation.
        spec: Tool specification.
        enabled: Whether the tool is currently enabled.
        metadata: Additional registration metadata (e.g. the owning MCP server).
    """

    name: str
    tool: Tool
    spec: ToolSpec
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Registry for managing tool registrations.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            spec=ToolSpec(name="get_weather", description="Current weather"),
            handler=lambda args: {"city": args["city"], "temp_c": 21},
        )

        @registry.tool("echo", "Echo the message back")
        def echo(args):
            return args.get("message", "")
    """

    def __init__(self, tools: Iterable[Tool] | None = None) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        for tool in tools or ():
            self.register(tool)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        tool: Tool,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If tool name already registered and allow_override is False.
        """
        name = tool.name
        if not name:
            raise ValueError("Tools must have a non-empty name")
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)

        registration = ToolRegistration(
            name=name,
            tool=tool,
            spec=tool.spec,
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a sync or async function as a tool."""
        return self.register(
            SimpleTool(spec=spec, handler=handler),
            enabled=enabled,
            allow_override=allow_override,
            metadata=metadata,
        )

    def tool(
        self,
        name: str,
        description: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register_function`."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register_function(
                ToolSpec(name=name, description=description, parameters=parameters or {}),
                handler,
            )
            return handler

        return decorator

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> Tool | None:
        """Return the tool if found and enabled, None otherwise."""
        registration = self._tools.get(name)
        if registration is None or not registration.enabled:
            return None
        return registration.tool

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_registration(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        registration = self._tools.get(name)
        return registration is not None and registration.enabled

    def list_tools(self, *, include_disabled: bool = False) -> list[ToolSpec]:
        return [
            registration.spec
            for registration in self._tools.values()
            if registration.enabled or include_disabled
        ]

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        return [
            registration.name
            for registration in self._tools.values()
            if registration.enabled or include_disabled
        ]

    def get_openai_tools(
        self,
        *,
        filter_names: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Get enabled tool definitions in OpenAI format.

        Args:
            filter_names: If provided, only include these tools.
        """
        tools: list[dict[str, Any]] = []
        for registration in self._tools.values():
            if not registration.enabled:
                continue
            if filter_names is not None and registration.name not in filter_names:
                continue
            tools.append(registration.spec.to_openai_tool())
        return tools

    def enable(self, name: str) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = True
        return True

    def disable(self, name: str) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = False
        return True

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def copy(self) -> ToolRegistry:
        """Return a shallow snapshot; later registrations do not leak across."""
        clone = ToolRegistry()
        for registration in self._tools.values():
            clone._tools[registration.name] = ToolRegistration(
                name=registration.name,
                tool=registration.tool,
                spec=registration.spec,
                enabled=registration.enabled,
                metadata=dict(registration.metadata),
            )
        return clone

    @classmethod
    def compose(cls, *sources: ToolRegistry | Iterable[Tool] | None) -> ToolRegistry:
        """Merge registries (or plain tool iterables) into a new snapshot.

        The first registration of a name wins; later duplicates are skipped
        with a warning so composed names stay unique.
        """
        merged = cls()
        for source in sources:
            if source is None:
                continue
            if isinstance(source, ToolRegistry):
                registrations = source.list_registrations(include_disabled=False)
            else:
                registrations = [
                    ToolRegistration(name=tool.name, tool=tool, spec=tool.spec) for tool in source
                ]
            for registration in registrations:
                if registration.name in merged._tools:
                    LOGGER.warning("Skipping duplicate tool %s while composing registries", registration.name)
                    continue
                merged._tools[registration.name] = ToolRegistration(
                    name=registration.name,
                    tool=registration.tool,
                    spec=registration.spec,
                    enabled=True,
                    metadata=dict(registration.metadata),
                )
        return merged

    def list_registrations(self, *, include_disabled: bool = False) -> list[ToolRegistration]:
        return [
            registration
            for registration in self._tools.values()
            if registration.enabled or include_disabled
        ]

    def clear(self) -> None:
        """Remove all registered tools."""
        self._tools.clear()

    def __len__(self) -> int:
        """Get the number of registered tools (including disabled)."""
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self):
        return iter(self.list_names())
