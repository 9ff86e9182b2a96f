"""Generation Driver: the bounded model/tool loop.

Each step sends the transcript to the model; when the reply asks for tools
the driver appends the assistant message, dispatches the calls, appends one
tool message per result and loops. The loop ends when the model answers
without tool calls or after ``max_steps`` tool-executing steps.

The streaming variant shares the state machine: text deltas are forwarded
as they arrive while tool-call deltas are accumulated per index and only
dispatched once the step's stream ends.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ...services import telemetry as telemetry_service
from ..ai_types import DriverConfig
from . import tool_call_parser
from .context import ExecutionContext
from .hooks import GenerationHooks
from .tool_dispatcher import ExecutorConfig, ToolDispatcher
from .tools import Tool, ToolCallRequest, ToolCallResult, ToolRegistry

__all__ = [
    "TOOL_FINISH_REASONS",
    "GenerationDriver",
    "GenerationResult",
    "GenerationStep",
    "LanguageModel",
    "ModelResponse",
    "StreamDelta",
]

LOGGER = logging.getLogger(__name__)

TOOL_FINISH_REASONS: frozenset[str | None] = frozenset({"tool_calls", "tool_use", "function_call", None})

TextCallback = Callable[[str], Any]
ToolsArg = ToolRegistry | Iterable[Tool] | None


# -----------------------------------------------------------------------------
# Model interface
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ModelResponse:
    """One complete model reply."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StreamDelta:
    """Incremental piece of a streamed reply.

    Tool-call fragments are keyed by ``tool_call_index``; ``tool_call_id``
    and ``tool_name`` usually arrive only on the first fragment.
    """

    text: str | None = None
    tool_call_index: int | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    finish_reason: str | None = None
    usage: Mapping[str, Any] | None = None


@runtime_checkable
class LanguageModel(Protocol):
    """What the driver needs from a model backend."""

    async def generate(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> ModelResponse:
        ...

    def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        ...


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class GenerationStep:
    """One model round-trip plus the tools it triggered."""

    index: int
    text: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_results: list[ToolCallResult] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass(slots=True)
class GenerationResult:
    """Outcome of a full driver run."""

    text: str
    steps: list[GenerationStep]
    messages: list[dict[str, Any]]
    stop_reason: str = "completed"
    finish_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def all_tool_calls(self) -> list[ToolCallRequest]:
        return [call for step in self.steps for call in step.tool_calls]

    @property
    def all_tool_results(self) -> list[ToolCallResult]:
        return [result for step in self.steps for result in step.tool_results]

    @property
    def hit_step_limit(self) -> bool:
        return self.stop_reason == "max_steps"

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "stop_reason": self.stop_reason,
            "finish_reason": self.finish_reason,
            "steps": len(self.steps),
            "tool_calls": len(self.all_tool_calls),
            "usage": dict(self.usage),
        }


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _coerce_registry(tools: ToolsArg) -> ToolRegistry:
    if tools is None:
        return ToolRegistry()
    if isinstance(tools, ToolRegistry):
        return tools
    return ToolRegistry(tools)


def _merge_usage(total: dict[str, Any], usage: Mapping[str, Any] | None) -> None:
    for key, value in (usage or {}).items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total[key] = total.get(key, 0) + value


async def _emit_text(callback: TextCallback | None, text: str) -> None:
    if callback is None or not text:
        return
    result = callback(text)
    if inspect.isawaitable(result):
        await result


def _ensure_call_ids(calls: list[ToolCallRequest], step: int) -> list[ToolCallRequest]:
    """Assign an id to every call that arrived without one."""
    return [
        call
        if call.id
        else ToolCallRequest(f"call_{step}_{index}_{uuid.uuid4().hex[:8]}", call.name, call.arguments)
        for index, call in enumerate(calls)
    ]


@dataclass(slots=True)
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Generation Driver
# -----------------------------------------------------------------------------


class GenerationDriver:
    """Drive a model through tool-calling steps until it answers in text.

    Example:
        driver = GenerationDriver()
        result = await driver.run(model, [{"role": "user", "content": "Weather in Oslo?"}], registry)
        print(result.text, result.stop_reason)
    """

    def __init__(
        self,
        config: DriverConfig | None = None,
        *,
        dispatcher: ToolDispatcher | None = None,
        hooks: GenerationHooks | None = None,
    ) -> None:
        self._config = (config or DriverConfig()).clamp()
        self._hooks = hooks or GenerationHooks()
        self._dispatcher = dispatcher or ToolDispatcher(
            config=ExecutorConfig(
                default_timeout=self._config.tool_timeout_seconds,
                max_fuzzy_distance=self._config.fuzzy_match_distance,
                validate_arguments=self._config.validate_arguments,
                parallel=self._config.parallel_tool_calls,
            )
        )
        self._dispatcher.set_hooks(self._hooks)

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    async def run(
        self,
        model: LanguageModel,
        messages: Sequence[Mapping[str, Any]],
        tools: ToolsArg = None,
        max_steps: int | None = None,
        *,
        context: ExecutionContext | None = None,
    ) -> GenerationResult:
        """Run the loop with complete (non-streamed) model replies.

        Args:
            model: Backend implementing :class:`LanguageModel`.
            messages: Initial transcript; it is copied, never mutated.
            tools: Registry or tools available to the model.
            max_steps: Tool-executing steps allowed; clamped to at least 1.
            context: Shared state handed to tool handlers.

        Raises:
            Exception: Model/transport failures propagate unchanged.
        """

        async def _fetch(transcript: list[dict[str, Any]], schemas: list[dict[str, Any]] | None) -> ModelResponse:
            return await model.generate(transcript, schemas)

        return await self._loop(model, messages, tools, max_steps, context, _fetch)

    async def run_stream(
        self,
        model: LanguageModel,
        messages: Sequence[Mapping[str, Any]],
        tools: ToolsArg = None,
        max_steps: int | None = None,
        on_text: TextCallback | None = None,
        *,
        context: ExecutionContext | None = None,
    ) -> GenerationResult:
        """Streaming counterpart of :meth:`run`; ``on_text`` receives text deltas."""

        async def _fetch(transcript: list[dict[str, Any]], schemas: list[dict[str, Any]] | None) -> ModelResponse:
            return await self._collect_stream(model.stream(transcript, schemas), on_text)

        return await self._loop(model, messages, tools, max_steps, context, _fetch)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _loop(
        self,
        model: LanguageModel,
        messages: Sequence[Mapping[str, Any]],
        tools: ToolsArg,
        max_steps: int | None,
        context: ExecutionContext | None,
        fetch: Callable[[list[dict[str, Any]], list[dict[str, Any]] | None], Awaitable[ModelResponse]],
    ) -> GenerationResult:
        registry = _coerce_registry(tools)
        limit = max(1, int(max_steps if max_steps is not None else self._config.max_steps))
        transcript: list[dict[str, Any]] = [dict(message) for message in messages]
        schemas = registry.get_openai_tools() or None
        steps: list[GenerationStep] = []
        usage: dict[str, Any] = {}
        tool_steps = 0

        await self._hooks.generation_start(model, transcript, registry)

        while True:
            response = await fetch(transcript, schemas)
            _merge_usage(usage, response.usage)
            calls, text = self._extract_calls(response)
            calls = _ensure_call_ids(calls, len(steps))

            if not calls:
                transcript.append({"role": "assistant", "content": text})
                steps.append(GenerationStep(len(steps), text, finish_reason=response.finish_reason))
                result = GenerationResult(
                    text=text,
                    steps=steps,
                    messages=transcript,
                    stop_reason="completed",
                    finish_reason=response.finish_reason,
                    usage=usage,
                )
                break

            transcript.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [call.to_openai() for call in calls],
                }
            )
            LOGGER.debug("Step %s: dispatching %s tool call(s)", tool_steps + 1, len(calls))
            results = await self._dispatcher.execute(calls, registry, context)
            transcript.extend(result.to_message() for result in results)
            steps.append(GenerationStep(len(steps), text, list(calls), results, response.finish_reason))
            tool_steps += 1

            if tool_steps >= limit:
                LOGGER.info("Generation stopped after reaching max_steps=%s", limit)
                result = GenerationResult(
                    text=text,
                    steps=steps,
                    messages=transcript,
                    stop_reason="max_steps",
                    finish_reason=response.finish_reason,
                    usage=usage,
                )
                break

        await self._hooks.generation_end(result)
        telemetry_service.emit(
            "generation.completed",
            {
                "steps": len(result.steps),
                "stop_reason": result.stop_reason,
                "tool_calls": len(result.all_tool_calls),
                "finish_reason": result.finish_reason,
            },
        )
        return result

    def _extract_calls(self, response: ModelResponse) -> tuple[list[ToolCallRequest], str]:
        text = response.text or ""
        if response.tool_calls:
            if response.finish_reason not in TOOL_FINISH_REASONS:
                return [], text
            return list(response.tool_calls), text
        if self._config.parse_embedded_tool_calls and tool_call_parser.has_embedded_tool_calls(text):
            embedded = tool_call_parser.parse_embedded_tool_calls(text)
            if embedded:
                LOGGER.debug("Parsed %s embedded tool call(s) from model text", len(embedded))
                return embedded, tool_call_parser.strip_embedded_tool_calls(text)
        return [], text

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _collect_stream(
        self,
        deltas: AsyncIterator[StreamDelta],
        on_text: TextCallback | None,
    ) -> ModelResponse:
        text_parts: list[str] = []
        pending: dict[int, _PendingToolCall] = {}
        finish_reason: str | None = None
        usage: dict[str, Any] = {}

        async for delta in deltas:
            if delta.text:
                text_parts.append(delta.text)
                await _emit_text(on_text, delta.text)
            if delta.tool_call_index is not None or delta.tool_name or delta.tool_call_id:
                index = delta.tool_call_index if delta.tool_call_index is not None else len(pending)
                entry = pending.setdefault(index, _PendingToolCall())
                if delta.tool_call_id:
                    entry.id = delta.tool_call_id
                if delta.tool_name:
                    entry.name = delta.tool_name
                if delta.arguments_delta:
                    entry.arguments.append(delta.arguments_delta)
            if delta.finish_reason:
                finish_reason = delta.finish_reason
            if delta.usage:
                _merge_usage(usage, delta.usage)

        calls = [
            ToolCallRequest(id=entry.id, name=entry.name, arguments="".join(entry.arguments))
            for _, entry in sorted(pending.items())
        ]
        return ModelResponse(
            text="".join(text_parts),
            tool_calls=calls,
            finish_reason=finish_reason if finish_reason or not calls else "tool_calls",
            usage=usage,
        )
