"""Parsing of tool calls embedded in model text.

Some models answer with delimited text markers instead of native tool calls
(``<|tool_calls_begin|><|tool_call_begin|>name<|tool_sep|>{...}<|tool_call_end|><|tool_calls_end|>``).
The driver feeds such calls through the regular dispatch path.
"""

from __future__ import annotations

import re
import uuid

from .tools import ToolCallRequest

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "has_embedded_tool_calls",
    "normalize_tool_marker_text",
    "parse_embedded_tool_calls",
    "parse_tool_call_entries",
    "parsed_tool_call_id",
    "strip_embedded_tool_calls",
]

# Stylized glyphs some models emit inside <|tool ...|> markers.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u200b"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)"
    r"(?:<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>|$)",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)"
    r"<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)"
    r"<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)


def normalize_tool_marker_text(text: str) -> str:
    """Map stylized Unicode glyphs to their ASCII equivalents."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def has_embedded_tool_calls(text: str | None) -> bool:
    if not text or not isinstance(text, str):
        return False
    return TOOL_CALLS_BLOCK_RE.search(normalize_tool_marker_text(text)) is not None


def parse_embedded_tool_calls(text: str | None, start_index: int = 0) -> list[ToolCallRequest]:
    """Extract the calls of the first ``tool_calls`` block in ``text``.

    Args:
        text: Model output to scan.
        start_index: Offset used when numbering generated call ids.

    Returns:
        Requests carrying the raw argument text; repair happens at dispatch.
    """
    if not text or not isinstance(text, str):
        return []
    match = TOOL_CALLS_BLOCK_RE.search(normalize_tool_marker_text(text))
    if not match:
        return []
    return parse_tool_call_entries(match.group("body") or "", start_index)


def parse_tool_call_entries(body: str, start_index: int = 0) -> list[ToolCallRequest]:
    if not body or not isinstance(body, str):
        return []
    calls: list[ToolCallRequest] = []
    normalized = normalize_tool_marker_text(body)
    for offset, entry in enumerate(TOOL_CALL_ENTRY_RE.finditer(normalized)):
        name = (entry.group("name") or "").strip().strip("\"'` \t\r\n")
        arguments = _strip_code_fence((entry.group("args") or "").strip())
        if not name:
            continue
        index = start_index + offset
        calls.append(ToolCallRequest(id=parsed_tool_call_id(name, index), name=name, arguments=arguments))
    return calls


def strip_embedded_tool_calls(text: str | None) -> str:
    """Return ``text`` with any tool-call block removed."""
    if not text:
        return ""
    return TOOL_CALLS_BLOCK_RE.sub("", normalize_tool_marker_text(text)).strip()


def parsed_tool_call_id(name: str, index: int) -> str:
    return f"parsed_{name}_{index}_{uuid.uuid4().hex[:8]}"


def _strip_code_fence(text: str) -> str:
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()
