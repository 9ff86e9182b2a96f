"""Tests for the tool registry and tool types."""

from __future__ import annotations

from typing import Any

import pytest

from agentrelay.ai.orchestration.context import ExecutionContext
from agentrelay.ai.orchestration.tools import (
    DuplicateToolError,
    SimpleTool,
    ToolCallRequest,
    ToolCallResult,
    ToolNotFoundError,
    ToolRegistry,
    ToolSpec,
)


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def _spec(name: str, **parameters: Any) -> ToolSpec:
    return ToolSpec(name=name, description=f"{name} tool", parameters=parameters)


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(_spec("search_web"), lambda args: f"results for {args.get('query')}")
    registry.register_function(_spec("get_weather"), lambda args: {"temp_c": 21})
    return registry


# -----------------------------------------------------------------------------
# Tests: registration
# -----------------------------------------------------------------------------


class TestRegistration:
    """Registering, looking up and toggling tools."""

    def test_register_and_lookup(self, registry: ToolRegistry) -> None:
        assert registry.list_names() == ["search_web", "get_weather"]
        assert registry.has("search_web")
        assert registry.get("missing") is None
        with pytest.raises(ToolNotFoundError):
            registry.get_required("missing")

    def test_duplicate_rejected_unless_overridden(self, registry: ToolRegistry) -> None:
        with pytest.raises(DuplicateToolError):
            registry.register_function(_spec("search_web"), lambda args: "again")

        registry.register_function(_spec("search_web"), lambda args: "again", allow_override=True)
        assert len(registry) == 2

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            ToolRegistry().register_function(_spec(""), lambda args: None)

    def test_disabled_tools_are_hidden(self, registry: ToolRegistry) -> None:
        registry.disable("get_weather")

        assert registry.list_names() == ["search_web"]
        assert registry.list_names(include_disabled=True) == ["search_web", "get_weather"]
        assert registry.get("get_weather") is None
        assert "get_weather" in registry

        registry.enable("get_weather")
        assert registry.has("get_weather")

    def test_decorator_registration(self) -> None:
        registry = ToolRegistry()

        @registry.tool("echo", "Echo back", {"type": "object", "properties": {"m": {"type": "string"}}})
        def echo(args: dict[str, Any]) -> str:
            return args["m"]

        assert registry.get_required("echo").spec.parameters["properties"] == {"m": {"type": "string"}}

    def test_unregister(self, registry: ToolRegistry) -> None:
        assert registry.unregister("search_web") is True
        assert registry.unregister("search_web") is False
        assert list(registry) == ["get_weather"]

    def test_openai_definitions(self, registry: ToolRegistry) -> None:
        definitions = registry.get_openai_tools(filter_names=["get_weather"])

        assert definitions == [
            {
                "type": "function",
                "function": {
                    "name": "get_weather",
                    "description": "get_weather tool",
                    "parameters": {"type": "object", "properties": {}},
                },
            }
        ]


# -----------------------------------------------------------------------------
# Tests: composition
# -----------------------------------------------------------------------------


def test_compose_keeps_first_registration_and_snapshots(registry: ToolRegistry) -> None:
    remote = ToolRegistry()
    remote.register_function(_spec("search_web"), lambda args: "remote")
    remote.register_function(_spec("fetch"), lambda args: "fetched")

    composed = ToolRegistry.compose(registry, remote, None)
    registry.register_function(_spec("late"), lambda args: None)

    assert composed.list_names() == ["search_web", "get_weather", "fetch"]
    assert "late" not in composed


def test_copy_is_independent(registry: ToolRegistry) -> None:
    clone = registry.copy()
    clone.disable("search_web")

    assert registry.has("search_web")
    assert not clone.has("search_web")


# -----------------------------------------------------------------------------
# Tests: tool types
# -----------------------------------------------------------------------------


class TestSimpleTool:
    """Handler invocation."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self) -> None:
        async def slow(args: dict[str, Any]) -> int:
            return args["n"] * 2

        assert await SimpleTool(_spec("double"), slow).execute({"n": 4}) == 8
        assert await SimpleTool(_spec("inc"), lambda args: args["n"] + 1).execute({"n": 4}) == 5

    @pytest.mark.asyncio
    async def test_context_is_passed_by_reference(self) -> None:
        context = ExecutionContext()

        def remember(args: dict[str, Any], context: ExecutionContext) -> str:
            context.set("last", args["value"])
            return "ok"

        await SimpleTool(_spec("remember"), remember).execute({"value": 42}, context)

        assert context.get("last") == 42


def test_tool_call_request_from_openai_shapes() -> None:
    nested = ToolCallRequest.from_openai({"id": "c1", "function": {"name": "f", "arguments": '{"a": 1}'}})
    flat = ToolCallRequest.from_openai({"id": "c2", "name": "g", "arguments": {"b": 2}})

    assert (nested.id, nested.name, nested.arguments) == ("c1", "f", '{"a": 1}')
    assert flat.arguments_text() == '{"b": 2}'
    assert flat.to_openai() == {"id": "c2", "type": "function", "function": {"name": "g", "arguments": '{"b": 2}'}}


def test_tool_call_result_message_and_repair_flag() -> None:
    result = ToolCallResult(id="c1", name="search_web", content="ok", requested_name="Search_Web")

    assert result.repaired
    assert result.to_message() == {"role": "tool", "tool_call_id": "c1", "name": "search_web", "content": "ok"}
    assert not ToolCallResult(id="c2", name="x", content="", requested_name="x").repaired


def test_execution_context_summary_hides_private_keys() -> None:
    context = ExecutionContext({"doc": "text", "_internal": 1, "rows": [1, 2]})

    assert context.summary() == [("doc", "str"), ("rows", "list")]
    assert ("_internal", "int") in context.summary(include_private=True)
    assert context.delete("doc") is True
    assert context.delete("doc") is False
