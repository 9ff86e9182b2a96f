"""Shared state passed by reference to tool handlers across a delegation tree."""

from __future__ import annotations

import asyncio
from typing import Any, Iterator, Mapping

__all__ = ["ExecutionContext"]

_MISSING = object()


class ExecutionContext:
    """Mutable key/value store shared by every tool in one run.

    The dispatcher never writes to it; handlers do. When tools run in
    parallel, writers should hold :meth:`locked` so that readers observe
    whole updates only.

    Example:
        async def remember(args, context):
            async with context.locked():
                context.set("last_query", args["query"])
            return "ok"
    """

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = asyncio.Lock()

    def locked(self) -> asyncio.Lock:
        """Return the lock guarding multi-step mutations (use with ``async with``)."""
        return self._lock

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def update(self, values: Mapping[str, Any]) -> None:
        self._data.update(values)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, _MISSING) is not _MISSING

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)

    def summary(self, *, include_private: bool = False) -> list[tuple[str, str]]:
        """Return ``(name, type)`` pairs describing what is stored.

        Keys starting with an underscore are bookkeeping and hidden unless
        ``include_private`` is set.
        """
        return [
            (key, type(value).__name__)
            for key, value in self._data.items()
            if include_private or not key.startswith("_")
        ]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ExecutionContext(keys={sorted(self._data)!r})"
