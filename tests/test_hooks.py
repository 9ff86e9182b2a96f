"""Tests for ai/orchestration/hooks.py."""

from __future__ import annotations

from typing import Any

import pytest

from agentrelay.ai.orchestration.hooks import GenerationHooks, create_permission_hook


class _RecordingConfirm:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.asked: list[str] = []

    def __call__(self, tool_name: str, arguments: Any) -> bool:
        self.asked.append(tool_name)
        return self.answer


class TestPermissionHook:
    """Permission modes."""

    @pytest.mark.asyncio
    async def test_implicit_approves_without_asking(self) -> None:
        confirm = _RecordingConfirm(False)
        hooks = create_permission_hook("implicit", confirm=confirm)

        assert await hooks.approve("delete_everything", {}) is True
        assert confirm.asked == []

    @pytest.mark.asyncio
    async def test_explicit_asks_for_every_tool(self) -> None:
        confirm = _RecordingConfirm(False)
        hooks = create_permission_hook("explicit", confirm=confirm)

        assert await hooks.approve("search_web", {}) is False
        assert confirm.asked == ["search_web"]

    @pytest.mark.asyncio
    async def test_escalate_asks_only_outside_allowlist(self) -> None:
        confirm = _RecordingConfirm(True)
        hooks = create_permission_hook("escalate", ["search_web"], confirm=confirm)

        assert await hooks.approve("search_web", {}) is True
        assert await hooks.approve("write_file", {"path": "x"}) is True
        assert confirm.asked == ["write_file"]

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            create_permission_hook("yolo")


@pytest.mark.asyncio
async def test_failing_observer_hooks_are_swallowed() -> None:
    def explode(*args: Any) -> None:
        raise RuntimeError("observer bug")

    hooks = GenerationHooks(on_tool_start=explode, on_generation_end=explode)

    await hooks.tool_start("x", {})
    await hooks.generation_end(None)


@pytest.mark.asyncio
async def test_failing_approval_denies() -> None:
    def explode(*args: Any) -> bool:
        raise RuntimeError("approval bug")

    assert await GenerationHooks(on_tool_approval=explode).approve("x", {}) is False
    assert await GenerationHooks().approve("x", {}) is True


@pytest.mark.asyncio
async def test_merge_fires_both_and_requires_both_approvals() -> None:
    seen: list[str] = []
    first = GenerationHooks(on_tool_end=lambda name, result: seen.append(f"first:{name}"))

    async def second_end(name: str, result: Any) -> None:
        seen.append(f"second:{name}")

    second = GenerationHooks(on_tool_end=second_end, on_tool_approval=lambda name, args: name != "rm")
    merged = first.merge(second)

    await merged.tool_end("ls", None)

    assert seen == ["first:ls", "second:ls"]
    assert await merged.approve("ls", {}) is True
    assert await merged.approve("rm", {}) is False
    assert first.merge(None) is first
