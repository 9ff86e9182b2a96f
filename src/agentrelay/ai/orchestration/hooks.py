"""Extension points around generation and tool execution.

Hooks observe the loop without affecting correctness: failures inside them
are logged and swallowed. The one exception is ``on_tool_approval``; a
falsy answer (or an exception) denies the call, which the dispatcher turns
into an ``is_error`` result.
"""

from __future__ import annotations

import inspect
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

__all__ = [
    "GenerationHooks",
    "create_permission_hook",
    "PERMISSION_MODES",
    "DEFAULT_ALLOWLIST",
]

LOGGER = logging.getLogger(__name__)

PERMISSION_MODES: tuple[str, ...] = ("implicit", "explicit", "escalate")
DEFAULT_ALLOWLIST: tuple[str, ...] = ("search_web", "read_resource", "read_file")

ApprovalCallback = Callable[[str, Mapping[str, Any]], Any]
ConfirmCallback = Callable[[str, Mapping[str, Any]], bool]


async def _call(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(slots=True)
class GenerationHooks:
    """Optional callbacks (sync or async) fired by the driver and dispatcher.

    Attributes:
        on_generation_start: ``(model, messages, tools)`` before the first model call.
        on_generation_end: ``(result)`` once the loop is done.
        on_tool_start: ``(tool_name, arguments)`` before a handler runs.
        on_tool_end: ``(tool_name, result)`` with the ``ToolCallResult``.
        on_tool_approval: ``(tool_name, arguments) -> bool``; falsy denies.
    """

    on_generation_start: Callable[..., Any] | None = None
    on_generation_end: Callable[..., Any] | None = None
    on_tool_start: Callable[..., Any] | None = None
    on_tool_end: Callable[..., Any] | None = None
    on_tool_approval: ApprovalCallback | None = None

    async def generation_start(self, model: Any, messages: Any, tools: Any) -> None:
        await self._fire("on_generation_start", model, messages, tools)

    async def generation_end(self, result: Any) -> None:
        await self._fire("on_generation_end", result)

    async def tool_start(self, tool_name: str, arguments: Mapping[str, Any]) -> None:
        await self._fire("on_tool_start", tool_name, arguments)

    async def tool_end(self, tool_name: str, result: Any) -> None:
        await self._fire("on_tool_end", tool_name, result)

    async def approve(self, tool_name: str, arguments: Mapping[str, Any]) -> bool:
        if self.on_tool_approval is None:
            return True
        try:
            return bool(await _call(self.on_tool_approval, tool_name, arguments))
        except Exception:
            LOGGER.warning("Approval hook failed for %s; denying", tool_name, exc_info=True)
            return False

    async def _fire(self, attribute: str, *args: Any) -> None:
        callback = getattr(self, attribute)
        if callback is None:
            return
        try:
            await _call(callback, *args)
        except Exception:
            LOGGER.debug("Hook %s failed", attribute, exc_info=True)

    def merge(self, other: GenerationHooks | None) -> GenerationHooks:
        """Combine two hook sets; both callbacks fire and approvals must both pass."""

        if other is None:
            return self
        merged = GenerationHooks()
        for attribute in ("on_generation_start", "on_generation_end", "on_tool_start", "on_tool_end"):
            setattr(merged, attribute, _chain(getattr(self, attribute), getattr(other, attribute)))
        merged.on_tool_approval = _all_approve(self.on_tool_approval, other.on_tool_approval)
        return merged


def _chain(first: Callable[..., Any] | None, second: Callable[..., Any] | None) -> Callable[..., Any] | None:
    if first is None or second is None:
        return first or second

    async def _both(*args: Any) -> None:
        await _call(first, *args)
        await _call(second, *args)

    return _both


def _all_approve(first: ApprovalCallback | None, second: ApprovalCallback | None) -> ApprovalCallback | None:
    if first is None or second is None:
        return first or second

    async def _both(tool_name: str, arguments: Mapping[str, Any]) -> bool:
        return bool(await _call(first, tool_name, arguments)) and bool(await _call(second, tool_name, arguments))

    return _both


def _console_confirm(tool_name: str, arguments: Mapping[str, Any]) -> bool:
    if not sys.stdin.isatty():
        LOGGER.warning("Non-interactive session: denying tool %s which requires permission", tool_name)
        return False
    rendered = json.dumps(dict(arguments), indent=2, ensure_ascii=False, default=str)
    print(f"\n[Permission Required] Tool: {tool_name}\nArguments:\n{rendered}", file=sys.stderr)
    answer = input("Approve execution? (y/n): ")
    return answer.strip().lower() in {"y", "yes"}


def create_permission_hook(
    mode: str = "implicit",
    allowlist: Iterable[str] = DEFAULT_ALLOWLIST,
    *,
    confirm: ConfirmCallback | None = None,
) -> GenerationHooks:
    """Build hooks enforcing a tool permission mode.

    Args:
        mode: ``implicit`` approves everything, ``explicit`` asks for every
            tool and ``escalate`` asks only for tools outside ``allowlist``.
        allowlist: Tool names auto-approved in ``escalate`` mode.
        confirm: Callback asked for permission; defaults to a console prompt
            that denies when stdin is not a terminal.

    Raises:
        ValueError: For an unknown mode.
    """

    if mode not in PERMISSION_MODES:
        raise ValueError(f"Unknown permission mode '{mode}'; expected one of {', '.join(PERMISSION_MODES)}")
    allowed = frozenset(allowlist)
    ask = confirm or _console_confirm

    async def on_tool_approval(tool_name: str, arguments: Mapping[str, Any]) -> bool:
        if mode == "implicit":
            return True
        if mode == "escalate" and tool_name in allowed:
            return True
        return bool(await _call(ask, tool_name, arguments))

    return GenerationHooks(on_tool_approval=on_tool_approval)
