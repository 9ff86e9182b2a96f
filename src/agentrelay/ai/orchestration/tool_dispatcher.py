"""Tool Dispatcher: resolve, repair and execute model-issued tool calls.

The dispatcher is a multi-layer defense between the model and the tool
handlers:

- Tool names are resolved exactly, then by case/format normalization,
  then by a unique fuzzy match. Anything left over is routed to the
  synthetic ``__invalid__`` tool, whose structured error lists the valid
  names so the model can retry.
- Arguments pass through structural JSON repair and, when the tool
  declares a schema, JSON Schema validation.
- Handler exceptions become ``is_error`` results.

``execute`` never raises and yields exactly one result per call, in input
order, regardless of completion order when calls run in parallel.
"""

from __future__ import annotations

import asyncio
import difflib
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from ...services import telemetry as telemetry_service
from ...utils.json_repair import parse_tool_arguments
from ..errors import ErrorCode, InvalidArgumentsError, InvalidToolCallError, ToolApprovalDenied, ToolError
from .context import ExecutionContext
from .hooks import GenerationHooks
from .tools import Tool, ToolCallRequest, ToolCallResult, ToolRegistry, ToolSpec

__all__ = [
    "INVALID_TOOL_NAME",
    "ExecutorConfig",
    "NameResolution",
    "ToolDispatcher",
    "levenshtein",
    "resolve_tool_name",
    "to_snake_case",
]

LOGGER = logging.getLogger(__name__)

INVALID_TOOL_NAME = "__invalid__"

_CAMEL_HEAD_RE = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_TAIL_RE = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS_RE = re.compile(r"[\s\-./]+")
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for tool execution.

    Attributes:
        default_timeout: Per-call timeout in seconds (None disables).
        max_fuzzy_distance: Largest edit distance accepted for name repair.
        validate_arguments: Validate arguments against the tool's JSON Schema.
        parallel: Run the calls of one batch concurrently.
        log_arguments: Whether to log tool arguments.
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = None
    max_fuzzy_distance: int = 3
    validate_arguments: bool = True
    parallel: bool = False
    log_arguments: bool = False
    log_results: bool = False


# -----------------------------------------------------------------------------
# Name resolution
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class NameResolution:
    """Outcome of resolving a requested tool name.

    ``strategy`` is one of ``exact``, ``lowercase``, ``snake_case``,
    ``normalized``, ``fuzzy`` or ``invalid``.
    """

    requested: str
    name: str | None
    strategy: str
    distance: int = 0

    @property
    def resolved(self) -> bool:
        return self.name is not None


def to_snake_case(name: str) -> str:
    """``GetWeather`` -> ``get_weather``; ``search-web`` -> ``search_web``."""

    value = _CAMEL_HEAD_RE.sub(r"\1_\2", name.strip())
    value = _CAMEL_TAIL_RE.sub(r"\1_\2", value)
    value = _SEPARATORS_RE.sub("_", value)
    value = _REPEATED_UNDERSCORE_RE.sub("_", value)
    return value.lower().strip("_")


def levenshtein(left: str, right: str) -> int:
    """Classic edit distance (insert, delete, substitute each cost 1)."""

    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for row, left_char in enumerate(left, start=1):
        current = [row]
        for column, right_char in enumerate(right, start=1):
            current.append(
                min(
                    previous[column] + 1,
                    current[column - 1] + 1,
                    previous[column - 1] + (left_char != right_char),
                )
            )
        previous = current
    return previous[-1]


def _unique(matches: Sequence[str]) -> str | None:
    return matches[0] if len(matches) == 1 else None


def resolve_tool_name(requested: str, available: Iterable[str], *, max_distance: int = 3) -> NameResolution:
    """Map a model-supplied tool name onto a registered one.

    Fuzzy matching accepts a candidate only when it is the single best match
    within ``max_distance``; ties are left unresolved.
    """

    names = list(available)
    requested = requested or ""
    if requested in names:
        return NameResolution(requested, requested, "exact")

    lowered = requested.strip().lower()
    match = _unique([name for name in names if name.lower() == lowered])
    if match:
        return NameResolution(requested, match, "lowercase")

    snake = to_snake_case(requested)
    match = _unique([name for name in names if name == snake or to_snake_case(name) == snake])
    if match:
        return NameResolution(requested, match, "snake_case")

    compact = _NON_ALNUM_RE.sub("", lowered)
    if compact:
        match = _unique([name for name in names if _NON_ALNUM_RE.sub("", name.lower()) == compact])
        if match:
            return NameResolution(requested, match, "normalized")

    if lowered and max_distance > 0 and names:
        scored = [(levenshtein(lowered, name.lower()), name) for name in names]
        best = min(distance for distance, _ in scored)
        if best <= max_distance:
            match = _unique([name for distance, name in scored if distance == best])
            if match:
                return NameResolution(requested, match, "fuzzy", best)

    return NameResolution(requested, None, "invalid")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _validation_error(spec: ToolSpec, arguments: Mapping[str, Any]) -> InvalidArgumentsError | None:
    schema = spec.parameters
    if not schema:
        return None
    try:
        validator = Draft202012Validator(dict(schema))
        error = best_match(validator.iter_errors(dict(arguments)))
    except SchemaError:
        LOGGER.debug("Tool %s declares an invalid schema; skipping validation", spec.name, exc_info=True)
        return None
    if error is None:
        return None
    path = "/".join(str(part) for part in error.absolute_path) or "(root)"
    return InvalidArgumentsError(
        message=f"Invalid arguments for tool '{spec.name}' at {path}: {error.message}",
        details={"path": path, "validator": error.validator},
    )


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Dispatches tool calls to registered implementations.

    Example:
        dispatcher = ToolDispatcher()
        results = await dispatcher.execute(
            [ToolCallRequest(id="c1", name="Search_Web", arguments='{"query": "rust"}')],
            registry,
        )
        assert results[0].name == "search_web"
    """

    def __init__(
        self,
        *,
        config: ExecutorConfig | None = None,
        hooks: GenerationHooks | None = None,
    ) -> None:
        self._config = config or ExecutorConfig()
        self._hooks = hooks or GenerationHooks()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def set_hooks(self, hooks: GenerationHooks | None) -> None:
        """Set or replace the hooks fired around each tool call."""
        self._hooks = hooks or GenerationHooks()

    def resolve(self, name: str, registry: ToolRegistry) -> NameResolution:
        return resolve_tool_name(
            name,
            registry.list_names(),
            max_distance=self._config.max_fuzzy_distance,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute(
        self,
        calls: Sequence[ToolCallRequest | Mapping[str, Any]],
        registry: ToolRegistry,
        context: ExecutionContext | None = None,
    ) -> list[ToolCallResult]:
        """Execute a batch of calls.

        Args:
            calls: Tool call requests (or OpenAI-shaped mappings).
            registry: Registry snapshot used for resolution.
            context: Shared state handed to handlers that accept it.

        Returns:
            One result per call, in input order.
        """
        requests = [self._coerce_request(call, index) for index, call in enumerate(calls)]
        if self._config.parallel and len(requests) > 1:
            gathered = await asyncio.gather(
                *(self._execute_guarded(request, registry, context) for request in requests)
            )
            return list(gathered)
        results: list[ToolCallResult] = []
        for request in requests:
            results.append(await self._execute_guarded(request, registry, context))
        return results

    async def execute_one(
        self,
        call: ToolCallRequest | Mapping[str, Any],
        registry: ToolRegistry,
        context: ExecutionContext | None = None,
    ) -> ToolCallResult:
        return await self._execute_guarded(self._coerce_request(call, 0), registry, context)

    async def _execute_guarded(
        self,
        request: ToolCallRequest,
        registry: ToolRegistry,
        context: ExecutionContext | None,
    ) -> ToolCallResult:
        try:
            return await self._execute_request(request, registry, context)
        except Exception as exc:  # pragma: no cover - last line of defense
            LOGGER.exception("Dispatcher failed while handling %s", request.name)
            return ToolCallResult(
                id=request.id,
                name=request.name,
                content=f"Error executing tool '{request.name}': {exc}",
                is_error=True,
                requested_name=request.name,
            )

    async def _execute_request(
        self,
        request: ToolCallRequest,
        registry: ToolRegistry,
        context: ExecutionContext | None,
    ) -> ToolCallResult:
        start = time.perf_counter()
        resolution = self.resolve(request.name, registry)
        if not resolution.resolved:
            result = self._invalid_tool_result(request, registry)
            await self._finish(result, start)
            return result
        if resolution.strategy != "exact":
            LOGGER.info(
                "Repaired tool name %r -> %r via %s",
                request.name,
                resolution.name,
                resolution.strategy,
            )

        tool_name = resolution.name or request.name
        tool = registry.get_required(tool_name)
        arguments = parse_tool_arguments(request.arguments, tool_name)
        if self._config.log_arguments:
            LOGGER.debug("Tool %s arguments: %s", tool_name, arguments)

        if self._config.validate_arguments:
            invalid = _validation_error(tool.spec, arguments)
            if invalid is not None:
                result = self._error_result(request, tool_name, arguments, invalid)
                await self._finish(result, start)
                return result

        if not await self._hooks.approve(tool_name, arguments):
            denied = ToolApprovalDenied.for_tool(tool_name)
            result = ToolCallResult(
                id=request.id,
                name=tool_name,
                content=denied.message,
                is_error=True,
                requested_name=request.name,
                arguments=arguments,
            )
            await self._finish(result, start)
            return result

        await self._hooks.tool_start(tool_name, arguments)
        result = await self._run_tool(request, tool, tool_name, arguments, context)
        await self._finish(result, start)
        return result

    async def _run_tool(
        self,
        request: ToolCallRequest,
        tool: Tool,
        tool_name: str,
        arguments: dict[str, Any],
        context: ExecutionContext | None,
    ) -> ToolCallResult:
        timeout = self._config.default_timeout
        try:
            if timeout is not None:
                value = await asyncio.wait_for(tool.execute(arguments, context), timeout)
            else:
                value = await tool.execute(arguments, context)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %ss", tool_name, timeout)
            return ToolCallResult(
                id=request.id,
                name=tool_name,
                content=f"Error executing tool '{tool_name}': timed out after {timeout:g}s",
                is_error=True,
                requested_name=request.name,
                arguments=arguments,
            )
        except ToolError as exc:
            return self._error_result(request, tool_name, arguments, exc)
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", tool_name, exc)
            LOGGER.debug("Tool %s traceback", tool_name, exc_info=True)
            return ToolCallResult(
                id=request.id,
                name=tool_name,
                content=f"Error executing tool '{tool_name}': {exc}",
                is_error=True,
                requested_name=request.name,
                arguments=arguments,
            )
        content = _stringify(value)
        if self._config.log_results:
            LOGGER.debug("Tool %s result: %.500s", tool_name, content)
        return ToolCallResult(
            id=request.id,
            name=tool_name,
            content=content,
            is_error=False,
            requested_name=request.name,
            arguments=arguments,
        )

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    def _invalid_tool_result(self, request: ToolCallRequest, registry: ToolRegistry) -> ToolCallResult:
        available = registry.list_names()
        close = difflib.get_close_matches(request.name or "", available, n=3, cutoff=0.5)
        error = InvalidToolCallError.for_tool(request.name, available, close_matches=close)
        LOGGER.warning("Model requested unknown tool %r; routing to %s", request.name, INVALID_TOOL_NAME)
        return ToolCallResult(
            id=request.id,
            name=INVALID_TOOL_NAME,
            content=json.dumps(error.to_dict(), ensure_ascii=False),
            is_error=True,
            requested_name=request.name,
            arguments=parse_tool_arguments(request.arguments, request.name),
        )

    @staticmethod
    def _error_result(
        request: ToolCallRequest,
        tool_name: str,
        arguments: dict[str, Any],
        error: ToolError,
    ) -> ToolCallResult:
        return ToolCallResult(
            id=request.id,
            name=tool_name,
            content=json.dumps(error.to_dict(), ensure_ascii=False, default=str),
            is_error=True,
            requested_name=request.name,
            arguments=arguments,
        )

    async def _finish(self, result: ToolCallResult, start: float) -> None:
        result.duration_ms = (time.perf_counter() - start) * 1000.0
        await self._hooks.tool_end(result.name, result)
        telemetry_service.emit(
            "tool.executed",
            {
                "tool_call_id": result.id,
                "tool": result.name,
                "requested_tool": result.requested_name,
                "is_error": result.is_error,
                "repaired": result.repaired,
                "duration_ms": round(result.duration_ms, 3),
                "error_code": ErrorCode.INVALID_TOOL_CALL if result.name == INVALID_TOOL_NAME else None,
            },
        )

    @staticmethod
    def _coerce_request(call: ToolCallRequest | Mapping[str, Any] | Any, index: int) -> ToolCallRequest:
        if isinstance(call, ToolCallRequest):
            request = call
        elif isinstance(call, Mapping):
            request = ToolCallRequest.from_openai(call)
        else:
            request = ToolCallRequest(
                id=str(getattr(call, "id", "") or ""),
                name=str(getattr(call, "name", "") or ""),
                arguments=getattr(call, "arguments", "") or "",
            )
        if not request.id:
            request = ToolCallRequest(
                id=f"call_{index}_{uuid.uuid4().hex[:8]}",
                name=request.name,
                arguments=request.arguments,
            )
        return request
