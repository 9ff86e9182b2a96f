"""JSON-RPC 2.0 message helpers for the Model Context Protocol."""

from __future__ import annotations

import enum
import json
from typing import Any, Mapping

__all__ = [
    "JSONRPC_VERSION",
    "PROTOCOL_VERSION",
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INVALID_PARAMS",
    "INTERNAL_ERROR",
    "ConnectionState",
    "make_request",
    "make_notification",
    "make_response",
    "make_error",
    "encode_message",
    "decode_message",
    "is_request",
    "is_notification",
    "is_response",
]

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ConnectionState(enum.Enum):
    """Lifecycle of one protocol connection."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    CLOSED = "closed"


def make_request(method: str, params: Mapping[str, Any] | None = None, *, id: int | str) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = dict(params)
    message["id"] = id
    return message


def make_notification(method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a request without an id; receivers never answer it."""

    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = dict(params)
    return message


def make_response(result: Any, id: int | str | None) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": id}


def make_error(code: int, message: str, id: int | str | None = None, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "error": error, "id": id}


def encode_message(message: Mapping[str, Any]) -> str:
    """Serialize ``message`` as a single line of compact JSON."""

    return json.dumps(message, ensure_ascii=False, separators=(",", ":"), default=str)


def decode_message(line: str) -> Any:
    """Parse one line; raises ``ValueError`` on malformed JSON."""

    return json.loads(line)


def is_request(message: Any) -> bool:
    return isinstance(message, Mapping) and "method" in message and "id" in message


def is_notification(message: Any) -> bool:
    return isinstance(message, Mapping) and "method" in message and "id" not in message


def is_response(message: Any) -> bool:
    return (
        isinstance(message, Mapping)
        and "method" not in message
        and "id" in message
        and ("result" in message or "error" in message)
    )
