"""Structural repair helpers for truncated or sloppy JSON.

Models frequently stop mid-document (token limits, dropped streams) or emit
JSON-ish text with single quotes and trailing commas. The helpers here close
whatever is left open so downstream code can still parse the payload. The
output is a best-effort approximation, never authoritative data.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

__all__ = [
    "repair_json",
    "safe_parse_json",
    "parse_tool_arguments",
    "EMPTY_ARGUMENT_PATTERNS",
]

LOGGER = logging.getLogger(__name__)

EMPTY_ARGUMENT_PATTERNS: frozenset[str] = frozenset(
    {"", "{}", "{ }", "null", "NULL", "undefined", "{", "}", "[]", "[ ]"}
)

_TOKEN_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789+-.")
_LITERALS: tuple[str, ...] = ("true", "false", "null")
_NUMBER_PREFIX_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

_SINGLE_QUOTED_KEY_RE = re.compile(r"'([^'\\]*)'\s*:")
_SINGLE_QUOTED_VALUE_RE = re.compile(r":\s*'([^'\\]*)'")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


# -----------------------------------------------------------------------------
# Scanner state
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _Frame:
    """An open ``{`` or ``[`` along with what it expects next."""

    kind: str
    expect: str
    after_comma: bool = False


@dataclass(slots=True)
class _ScanState:
    stack: list[_Frame] = field(default_factory=list)
    in_string: bool = False
    string_is_key: bool = False
    escape_start: int | None = None
    unicode_remaining: int = 0
    token_start: int | None = None
    saw_content: bool = False

    def value_completed(self) -> None:
        if self.stack:
            top = self.stack[-1]
            top.expect = "after"
            top.after_comma = False

    def value_started(self) -> None:
        if self.stack:
            self.stack[-1].after_comma = False


def _scan(text: str) -> _ScanState:
    state = _ScanState()
    for index, char in enumerate(text):
        if state.in_string:
            _scan_string_char(state, index, char)
            continue

        if state.token_start is not None:
            if char in _TOKEN_CHARS:
                continue
            state.token_start = None
            state.value_completed()

        if char.isspace():
            continue
        state.saw_content = True

        if char == '"':
            top = state.stack[-1] if state.stack else None
            state.in_string = True
            state.string_is_key = top is not None and top.kind == "{" and top.expect == "key"
            state.value_started()
        elif char in "{[":
            state.value_started()
            state.stack.append(_Frame(kind=char, expect="key" if char == "{" else "value"))
        elif char in "}]":
            if state.stack:
                state.stack.pop()
            state.value_completed()
        elif char == ":":
            if state.stack and state.stack[-1].kind == "{":
                state.stack[-1].expect = "value"
        elif char == ",":
            if state.stack:
                top = state.stack[-1]
                top.expect = "key" if top.kind == "{" else "value"
                top.after_comma = True
        elif char in _TOKEN_CHARS:
            state.token_start = index
            state.value_started()
    return state


def _scan_string_char(state: _ScanState, index: int, char: str) -> None:
    if state.unicode_remaining:
        if char in _HEX_DIGITS:
            state.unicode_remaining -= 1
            if not state.unicode_remaining:
                state.escape_start = None
        else:
            state.unicode_remaining = 0
            state.escape_start = None
        return
    if state.escape_start is not None:
        if char == "u":
            state.unicode_remaining = 4
        else:
            state.escape_start = None
        return
    if char == "\\":
        state.escape_start = index
        return
    if char == '"':
        state.in_string = False
        if state.string_is_key:
            state.stack[-1].expect = "colon"
        else:
            state.value_completed()


def _complete_token(token: str) -> str:
    for literal in _LITERALS:
        if literal.startswith(token):
            return literal
    match = _NUMBER_PREFIX_RE.match(token)
    if match and match.group(0):
        return match.group(0)
    return "null"


def _trim_trailing_comma(text: str) -> str:
    stripped = text.rstrip()
    if stripped.endswith(","):
        return stripped[:-1]
    return text


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def repair_json(partial: str) -> str:
    """Return the smallest structural completion of ``partial``.

    Open strings are closed first, then dangling keys, colons, commas and
    partial literals are settled, and finally every open ``{``/``[`` is closed
    in reverse order. Valid JSON is returned unchanged.

    Args:
        partial: Possibly truncated JSON text.

    Returns:
        Text that ``json.loads`` accepts whenever ``partial`` was a prefix of a
        valid document.
    """

    if partial is None or not partial.strip():
        return "{}"

    text = partial
    state = _scan(text)

    if state.in_string:
        if state.escape_start is not None:
            text = text[: state.escape_start]
        text += '"'
        if state.string_is_key:
            text += ": null"
            state.value_completed()
        else:
            state.value_completed()
    elif state.token_start is not None:
        token = text[state.token_start :]
        completed = _complete_token(token)
        if completed != token:
            text = text[: state.token_start] + completed
        state.value_completed()

    if state.stack:
        top = state.stack[-1]
        if top.expect == "colon":
            text += ": null"
        elif top.expect == "value" and top.kind == "{":
            text += " null"
        elif top.after_comma:
            text = _trim_trailing_comma(text)

    for frame in reversed(state.stack):
        text += "}" if frame.kind == "{" else "]"
    return text


def safe_parse_json(text: str | None, default: Any = None) -> Any:
    """Parse ``text`` as JSON, repairing it when needed, else return ``default``."""

    if text is None:
        return default
    if not isinstance(text, str):
        return text
    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return json.loads(repair_json(text))
    except ValueError:
        LOGGER.debug("Unable to repair JSON payload of length %s", len(text))
        return default


def _heuristic_parse(text: str) -> Any:
    candidate = _SINGLE_QUOTED_KEY_RE.sub(r'"\1":', text)
    candidate = _SINGLE_QUOTED_VALUE_RE.sub(r': "\1"', candidate)
    candidate = _UNQUOTED_KEY_RE.sub(r'\1"\2":', candidate)
    candidate = _TRAILING_COMMA_RE.sub(r"\1", candidate)
    for attempt in (candidate, repair_json(candidate)):
        try:
            return json.loads(attempt)
        except ValueError:
            continue
    try:
        return ast.literal_eval(text)
    except (ValueError, SyntaxError, MemoryError, RecursionError):
        return None


def parse_tool_arguments(raw: Any, tool_name: str | None = None) -> dict[str, Any]:
    """Turn model-supplied tool arguments into a dictionary.

    The layers are: mapping passthrough, empty-pattern detection, direct JSON
    parse, structural repair, then a heuristic pass for single quotes,
    unquoted keys, trailing commas and Python literals. Non-object values are
    wrapped as ``{"value": ...}`` and total failure yields ``{}``.
    """

    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        return {"value": raw}

    text = raw.strip()
    if text in EMPTY_ARGUMENT_PATTERNS:
        return {}

    parsed: Any = None
    for loader in (json.loads, lambda value: json.loads(repair_json(value))):
        try:
            parsed = loader(text)
            break
        except ValueError:
            continue
    else:
        parsed = _heuristic_parse(text)

    if parsed is None:
        LOGGER.debug("Discarding unparseable arguments for tool %s: %.120s", tool_name or "<unknown>", text)
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}
