"""Tests for ai/orchestration/driver.py."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Mapping, Sequence

import pytest

from agentrelay.ai.ai_types import DriverConfig
from agentrelay.ai.orchestration.context import ExecutionContext
from agentrelay.ai.orchestration.driver import GenerationDriver, ModelResponse, StreamDelta
from agentrelay.ai.orchestration.hooks import GenerationHooks
from agentrelay.ai.orchestration.tools import ToolCallRequest, ToolRegistry, ToolSpec
from agentrelay.services import telemetry


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


class _ScriptedModel:
    """Replays canned replies; the last one repeats once the script runs out."""

    def __init__(self, *responses: ModelResponse) -> None:
        self._responses = list(responses)
        self.transcripts: list[list[dict[str, Any]]] = []
        self.tool_schemas: list[Any] = []

    async def generate(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> ModelResponse:
        self.transcripts.append([dict(message) for message in messages])
        self.tool_schemas.append(tools)
        return self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]

    async def stream(self, messages: Any, tools: Any = None) -> AsyncIterator[StreamDelta]:
        raise AssertionError("stream() not expected")
        yield  # pragma: no cover


class _ScriptedStreamModel:
    """Replays one list of deltas per step."""

    def __init__(self, *steps: list[StreamDelta]) -> None:
        self._steps = list(steps)
        self.calls = 0

    async def generate(self, messages: Any, tools: Any = None) -> ModelResponse:
        raise AssertionError("generate() not expected")

    async def stream(self, messages: Any, tools: Any = None) -> AsyncIterator[StreamDelta]:
        self.calls += 1
        for delta in self._steps.pop(0):
            yield delta


def _tool_call(name: str, arguments: str = "{}", id: str = "call_1") -> ToolCallRequest:
    return ToolCallRequest(id=id, name=name, arguments=arguments)


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(
        ToolSpec(
            name="get_weather",
            description="Weather for a city",
            parameters={"type": "object", "properties": {"city": {"type": "string"}}},
        ),
        lambda args: {"city": args.get("city"), "temp_c": 21},
    )
    return registry


USER = [{"role": "user", "content": "Weather in Oslo?"}]


# -----------------------------------------------------------------------------
# Tests: run
# -----------------------------------------------------------------------------


class TestRun:
    """Non-streamed loop."""

    @pytest.mark.asyncio
    async def test_text_answer_completes_in_one_step(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(ModelResponse(text="Sunny.", finish_reason="stop", usage={"total_tokens": 7}))

        result = await GenerationDriver().run(model, USER, registry)

        assert result.text == "Sunny."
        assert result.stop_reason == "completed"
        assert result.finish_reason == "stop"
        assert len(result.steps) == 1
        assert result.messages[-1] == {"role": "assistant", "content": "Sunny."}
        assert result.usage == {"total_tokens": 7}
        assert model.tool_schemas[0][0]["function"]["name"] == "get_weather"

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(
            ModelResponse(tool_calls=[_tool_call("get_weather", '{"city": "Oslo"}')], finish_reason="tool_calls"),
            ModelResponse(text="21C in Oslo.", finish_reason="stop"),
        )

        result = await GenerationDriver().run(model, USER, registry)

        assert result.text == "21C in Oslo."
        assert len(result.steps) == 2
        assistant, tool_message = model.transcripts[1][1], model.transcripts[1][2]
        assert assistant["role"] == "assistant"
        assert assistant["content"] is None
        assert assistant["tool_calls"][0]["id"] == "call_1"
        assert tool_message["role"] == "tool"
        assert tool_message["tool_call_id"] == "call_1"
        assert json.loads(tool_message["content"]) == {"city": "Oslo", "temp_c": 21}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [False, True])
    async def test_duplicate_call_ids_in_one_step(self, registry: ToolRegistry, parallel: bool) -> None:
        calls = [_tool_call("get_weather", '{"city": "Oslo"}', id="c1"), _tool_call("launch_rockets", id="c1")]
        model = _ScriptedModel(
            ModelResponse(tool_calls=calls, finish_reason="tool_calls"),
            ModelResponse(text="Done.", finish_reason="stop"),
        )

        result = await GenerationDriver(DriverConfig(parallel_tool_calls=parallel)).run(model, USER, registry)

        tool_messages = [message for message in model.transcripts[1] if message["role"] == "tool"]
        assert [message["tool_call_id"] for message in tool_messages] == ["c1", "c1"]
        assert [r.is_error for r in result.all_tool_results] == [False, True]
        assert json.loads(tool_messages[0]["content"]) == {"city": "Oslo", "temp_c": 21}

    @pytest.mark.asyncio
    async def test_max_steps_runs_tools_then_stops(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(ModelResponse(tool_calls=[_tool_call("get_weather")], finish_reason="tool_calls"))

        result = await GenerationDriver().run(model, USER, registry, max_steps=1)

        assert result.stop_reason == "max_steps"
        assert result.hit_step_limit
        assert len(model.transcripts) == 1
        assert result.messages[-1]["role"] == "tool"
        assert len(result.all_tool_results) == 1

    @pytest.mark.asyncio
    async def test_max_steps_is_clamped_to_one(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(ModelResponse(tool_calls=[_tool_call("get_weather")], finish_reason="tool_calls"))

        result = await GenerationDriver().run(model, USER, registry, max_steps=0)

        assert len(result.steps) == 1
        assert result.stop_reason == "max_steps"

    @pytest.mark.asyncio
    async def test_tool_calls_ignored_without_tool_finish_reason(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(
            ModelResponse(text="Done.", tool_calls=[_tool_call("get_weather")], finish_reason="stop")
        )

        result = await GenerationDriver().run(model, USER, registry)

        assert result.stop_reason == "completed"
        assert result.all_tool_calls == []

    @pytest.mark.asyncio
    async def test_repaired_name_and_unknown_tool_reach_the_model(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(
            ModelResponse(
                tool_calls=[_tool_call("GetWeather", id="a"), _tool_call("launch_rockets", id="b")],
                finish_reason="tool_calls",
            ),
            ModelResponse(text="ok", finish_reason="stop"),
        )

        result = await GenerationDriver().run(model, USER, registry)

        first, second = result.steps[0].tool_results
        assert first.name == "get_weather" and not first.is_error
        assert second.name == "__invalid__" and second.is_error
        assert [message["tool_call_id"] for message in model.transcripts[1][2:]] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_input_transcript_is_not_mutated(self, registry: ToolRegistry) -> None:
        messages = [dict(USER[0])]
        model = _ScriptedModel(ModelResponse(text="hi", finish_reason="stop"))

        await GenerationDriver().run(model, messages, registry)

        assert messages == USER

    @pytest.mark.asyncio
    async def test_missing_ids_are_assigned(self, registry: ToolRegistry) -> None:
        model = _ScriptedModel(
            ModelResponse(tool_calls=[_tool_call("get_weather", id="")], finish_reason="tool_calls"),
            ModelResponse(text="ok", finish_reason="stop"),
        )

        result = await GenerationDriver().run(model, USER, registry)

        call_id = result.steps[0].tool_calls[0].id
        assert call_id.startswith("call_0_0_")
        assert result.steps[0].tool_results[0].id == call_id

    @pytest.mark.asyncio
    async def test_no_tools_sends_no_schemas(self) -> None:
        model = _ScriptedModel(ModelResponse(text="plain", finish_reason="stop"))

        await GenerationDriver().run(model, USER)

        assert model.tool_schemas == [None]

    @pytest.mark.asyncio
    async def test_model_errors_propagate(self, registry: ToolRegistry) -> None:
        class _BrokenModel(_ScriptedModel):
            async def generate(self, messages: Any, tools: Any = None) -> ModelResponse:
                raise ConnectionError("backend down")

        with pytest.raises(ConnectionError):
            await GenerationDriver().run(_BrokenModel(ModelResponse()), USER, registry)


class TestEmbeddedCalls:
    """Tool calls written as text markers."""

    @pytest.mark.asyncio
    async def test_markers_are_dispatched_and_stripped(self, registry: ToolRegistry) -> None:
        text = (
            "Checking."
            '<|tool_calls_begin|><|tool_call_begin|>get_weather<|tool_sep|>{"city": "Bergen"}'
            "<|tool_call_end|><|tool_calls_end|>"
        )
        model = _ScriptedModel(
            ModelResponse(text=text, finish_reason="stop"),
            ModelResponse(text="Rainy.", finish_reason="stop"),
        )

        result = await GenerationDriver().run(model, USER, registry)

        assert result.text == "Rainy."
        step = result.steps[0]
        assert step.text == "Checking."
        assert step.tool_results[0].arguments == {"city": "Bergen"}
        assert model.transcripts[1][1]["content"] == "Checking."

    @pytest.mark.asyncio
    async def test_marker_parsing_can_be_disabled(self, registry: ToolRegistry) -> None:
        text = "<|tool_calls_begin|><|tool_call_begin|>get_weather<|tool_sep|>{}<|tool_call_end|><|tool_calls_end|>"
        model = _ScriptedModel(ModelResponse(text=text, finish_reason="stop"))

        result = await GenerationDriver(DriverConfig(parse_embedded_tool_calls=False)).run(model, USER, registry)

        assert result.stop_reason == "completed"
        assert result.text == text


# -----------------------------------------------------------------------------
# Tests: run_stream
# -----------------------------------------------------------------------------


class TestRunStream:
    """Streaming loop."""

    @pytest.mark.asyncio
    async def test_accumulates_fragmented_tool_calls(self, registry: ToolRegistry) -> None:
        model = _ScriptedStreamModel(
            [
                StreamDelta(text="Let me check. "),
                StreamDelta(tool_call_index=0, tool_call_id="s1", tool_name="get_weather"),
                StreamDelta(tool_call_index=0, arguments_delta='{"ci'),
                StreamDelta(tool_call_index=0, arguments_delta='ty": "Oslo"}'),
                StreamDelta(finish_reason="tool_calls"),
            ],
            [
                StreamDelta(text="21C"),
                StreamDelta(text=" today."),
                StreamDelta(finish_reason="stop", usage={"total_tokens": 12}),
            ],
        )
        seen: list[str] = []

        result = await GenerationDriver().run_stream(model, USER, registry, on_text=seen.append)

        assert seen == ["Let me check. ", "21C", " today."]
        assert result.text == "21C today."
        assert result.steps[0].tool_calls[0].id == "s1"
        assert result.steps[0].tool_results[0].arguments == {"city": "Oslo"}
        assert result.usage == {"total_tokens": 12}
        assert model.calls == 2

    @pytest.mark.asyncio
    async def test_async_text_callback_and_default_finish_reason(self, registry: ToolRegistry) -> None:
        model = _ScriptedStreamModel(
            [StreamDelta(tool_call_index=0, tool_call_id="s1", tool_name="get_weather", arguments_delta="{}")],
            [StreamDelta(text="done")],
        )
        seen: list[str] = []

        async def on_text(chunk: str) -> None:
            seen.append(chunk)

        result = await GenerationDriver().run_stream(model, USER, registry, on_text=on_text)

        assert seen == ["done"]
        assert result.steps[0].finish_reason == "tool_calls"
        assert len(result.all_tool_results) == 1


# -----------------------------------------------------------------------------
# Tests: hooks, context and telemetry
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hooks_context_and_telemetry(registry: ToolRegistry) -> None:
    sink = telemetry.InMemoryEventSink(["generation.completed"])
    events: list[str] = []
    hooks = GenerationHooks(
        on_generation_start=lambda model, messages, tools: events.append("start"),
        on_tool_start=lambda name, args: events.append(f"tool:{name}"),
        on_generation_end=lambda result: events.append(f"end:{result.stop_reason}"),
    )

    def remember(args: dict[str, Any], context: ExecutionContext) -> str:
        context.set("remembered", args["value"])
        return "stored"

    registry.register_function(ToolSpec(name="remember", description=""), remember)
    context = ExecutionContext()
    model = _ScriptedModel(
        ModelResponse(tool_calls=[_tool_call("remember", '{"value": 9}')], finish_reason="tool_calls"),
        ModelResponse(text="ok", finish_reason="stop"),
    )

    await GenerationDriver(hooks=hooks).run(model, USER, registry, context=context)

    assert context.get("remembered") == 9
    assert events == ["start", "tool:remember", "end:completed"]
    payload = sink.tail()[0].payload
    assert payload["steps"] == 2
    assert payload["tool_calls"] == 1
    assert payload["stop_reason"] == "completed"
