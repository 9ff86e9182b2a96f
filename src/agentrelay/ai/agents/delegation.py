"""Delegation Stack: agent hand-off with depth limits and loop guardrails.

A manager agent receives a ``delegate_task`` tool. Calling it suspends the
caller on the stack, runs the target agent's own Generation Driver on the
sub-task and hands the target's final text back as the tool result. Every
limit (depth, guardrails, agent failure) is reported as text the calling
model can read rather than as an exception.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Mapping

from ...services import telemetry as telemetry_service
from ..ai_types import DelegationConfig, GuardrailPolicy
from ..orchestration.context import ExecutionContext
from ..orchestration.driver import GenerationResult
from ..orchestration.tools import SimpleTool, ToolCategory, ToolSpec
from .agent import Agent, AgentRegistry

__all__ = [
    "DELEGATE_TOOL_NAME",
    "PRIORITIES",
    "DelegationFrame",
    "DelegationRecord",
    "DelegationStack",
]

LOGGER = logging.getLogger(__name__)

DELEGATE_TOOL_NAME = "delegate_task"
PRIORITIES: tuple[str, ...] = ("high", "normal", "low")
EMPTY_RESULT_TEXT = "[Agent completed but returned no text]"


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class DelegationFrame:
    """A suspended caller waiting for its delegate to finish."""

    agent: str | None
    delegation_id: str
    suspended_at: float


@dataclass(slots=True)
class DelegationRecord:
    """History entry written for every delegation attempt.

    ``blocked_by`` is ``None`` for delegations that ran, otherwise
    ``"guardrail"`` or ``"depth"``.
    """

    id: str
    from_agent: str | None
    to_agent: str
    task: str
    task_hash: str
    priority: str
    depth: int
    started_at: float
    finished_at: float | None = None
    duration_ms: float = 0.0
    result_preview: str | None = None
    error: str | None = None
    blocked_by: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.blocked_by is None and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def task_hash(task: str) -> str:
    return hashlib.sha256(task.encode("utf-8")).hexdigest()


def _normalize_priority(priority: str | None) -> str:
    value = (priority or "normal").strip().lower()
    return value if value in PRIORITIES else "normal"


# -----------------------------------------------------------------------------
# Delegation Stack
# -----------------------------------------------------------------------------


class DelegationStack:
    """Coordinates a manager agent and its delegates.

    Example:
        stack = DelegationStack([manager, researcher, writer])
        result = await stack.run("manager", "Write a report on solar output")
        print(result.text, stack.delegation_stats())
    """

    def __init__(
        self,
        agents: AgentRegistry | Iterable[Agent],
        *,
        config: DelegationConfig | None = None,
        context: ExecutionContext | None = None,
    ) -> None:
        self._agents = agents if isinstance(agents, AgentRegistry) else AgentRegistry(agents)
        self._config = (config or DelegationConfig()).clamp()
        self._context = context if context is not None else ExecutionContext()
        self._frames: list[DelegationFrame] = []
        self._history: list[DelegationRecord] = []
        self._current_agent: str | None = None
        self._global_goal: str | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def agents(self) -> AgentRegistry:
        return self._agents

    @property
    def config(self) -> DelegationConfig:
        return self._config

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def guardrails(self) -> GuardrailPolicy:
        return self._config.guardrails

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def current_agent(self) -> str | None:
        return self._current_agent

    @property
    def frames(self) -> tuple[DelegationFrame, ...]:
        return tuple(self._frames)

    @property
    def global_goal(self) -> str | None:
        return self._global_goal

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    async def delegate(
        self,
        target: str,
        task: str,
        context: str | None = None,
        priority: str = "normal",
    ) -> str:
        """Run ``task`` on agent ``target`` and return its final text.

        Never raises for agent failures or limits; those come back as
        ``[GUARDRAIL]``, ``[DELEGATION ERROR]``, ``[AGENT ERROR]`` or
        ``[ERROR]`` text.
        """
        agent = self._agents.get(target)
        if agent is None:
            available = ", ".join(self._agents.names())
            return f"[ERROR] Agent '{target}' not found. Available agents: {available}"

        priority = _normalize_priority(priority)
        digest = task_hash(task)
        record = DelegationRecord(
            id=f"del_{uuid.uuid4().hex[:12]}",
            from_agent=self._current_agent,
            to_agent=target,
            task=task[:200],
            task_hash=digest,
            priority=priority,
            depth=self.depth,
            started_at=time.time(),
        )

        blocked = self._check_guardrails(target, digest)
        if blocked is not None:
            return self._block(record, "guardrail", blocked)

        max_depth = self._config.max_depth
        if self.depth >= max_depth:
            message = (
                f"[DELEGATION ERROR] Maximum delegation depth ({max_depth}) reached. "
                "Cannot delegate further. Please complete the task directly."
            )
            return self._block(record, "depth", message)

        frame = DelegationFrame(self._current_agent, record.id, time.monotonic())
        self._frames.append(frame)
        self._current_agent = target
        record.depth = self.depth
        LOGGER.info("Delegating to %s (depth %s/%s)", target, self.depth, max_depth)
        try:
            prompt = self.build_delegate_context(task, context, priority, caller=frame.agent)
            extra_tools = []
            if self._config.allow_nested_delegation and len(self._agents) > 1:
                extra_tools.append(self.generate_delegate_tool(exclude=target))
            result = await agent.run(
                prompt,
                context=self._context,
                extra_tools=extra_tools,
                max_steps=self._config.max_steps_per_agent,
            )
            text = result.text or EMPTY_RESULT_TEXT
        except Exception as exc:
            LOGGER.warning("Delegate %s failed: %s", target, exc)
            LOGGER.debug("Delegate %s traceback", target, exc_info=True)
            record.error = str(exc) or exc.__class__.__name__
            text = f"[AGENT ERROR] {target} failed: {record.error}"
        finally:
            self._frames.pop()
            self._current_agent = frame.agent
            record.finished_at = time.time()
            record.duration_ms = (time.monotonic() - frame.suspended_at) * 1000.0
            self._history.append(record)

        record.result_preview = text[:100]
        telemetry_service.emit(
            "delegation.completed",
            {
                "delegation_id": record.id,
                "from_agent": record.from_agent,
                "to_agent": target,
                "depth": record.depth,
                "duration_ms": round(record.duration_ms, 3),
                "success": record.succeeded,
                "priority": priority,
            },
        )
        return text

    def _check_guardrails(self, target: str, digest: str) -> str | None:
        policy = self._config.guardrails
        if not policy.enabled:
            return None
        executed = [record for record in self._history if record.blocked_by is None]
        recent = executed[-policy.window :]
        if len(recent) >= policy.min_history:
            count = sum(1 for record in recent if record.to_agent == target)
            if count >= policy.max_repeats:
                return (
                    f"[GUARDRAIL] Potential infinite loop detected: Agent '{target}' has been called "
                    f"{count} times recently. Consider completing the task directly or trying a "
                    "different approach."
                )
        if any(record.task_hash == digest for record in recent):
            return (
                "[GUARDRAIL] Duplicate task detected. This exact task was recently delegated. "
                "Please use the previous result or modify the task."
            )
        return None

    def _block(self, record: DelegationRecord, reason: str, message: str) -> str:
        LOGGER.warning("Delegation to %s blocked by %s", record.to_agent, reason)
        record.blocked_by = reason
        record.error = message
        record.finished_at = record.started_at
        self._history.append(record)
        telemetry_service.emit(
            "delegation.blocked",
            {
                "delegation_id": record.id,
                "from_agent": record.from_agent,
                "to_agent": record.to_agent,
                "reason": reason,
                "depth": record.depth,
            },
        )
        return message

    # ------------------------------------------------------------------
    # Prompts and tools
    # ------------------------------------------------------------------

    def build_delegate_context(
        self,
        task: str,
        additional_context: str | None = None,
        priority: str = "normal",
        *,
        caller: str | None = None,
    ) -> str:
        """Compose the user message a delegate receives."""
        parts: list[str] = []
        if caller:
            parts.append(f"You are assisting agent '{caller}'.")
        else:
            parts.append("You are assisting the primary Manager agent.")
        if self._global_goal:
            parts.append(f'Global Goal: "{self._global_goal}"')
        parts.append(f'Your Sub-task [{_normalize_priority(priority).upper()} priority]: "{task}"')

        remaining = self._config.max_depth - self.depth
        if remaining <= self._config.depth_warning_threshold:
            parts.append(
                f"[WARNING] Only {remaining} delegation level(s) remaining. "
                "Complete tasks directly when possible."
            )

        variables = self._context.summary()
        if variables:
            listing = "\n".join(f"- {name} ({type_name})" for name, type_name in variables)
            parts.append(f"\nAvailable data in session:\n{listing}")

        if additional_context:
            parts.append(f"\nAdditional Context: {additional_context}")
        return "\n".join(parts)

    def build_manager_prompt(self, agent: Agent) -> str:
        parts: list[str] = []
        if agent.system_prompt:
            parts.append(agent.system_prompt)
            parts.append("")
        parts.extend(
            [
                "[ORCHESTRATION GUIDELINES]",
                "You are a manager agent coordinating specialized sub-agents.",
                "- Delegate tasks to the most appropriate specialist agent",
                "- Provide clear, specific task descriptions",
                "- Synthesize results from multiple agents when needed",
                "- Handle errors gracefully and retry with different approaches",
                f"- Maximum delegation depth: {self._config.max_depth}",
            ]
        )
        roster = self._agents.describe(exclude=[agent.name])
        if roster:
            parts.extend(["", "Available agents:", roster])
        return "\n".join(parts)

    def generate_delegate_tool(self, exclude: str | Iterable[str] | None = None) -> SimpleTool:
        """Build the ``delegate_task`` tool targeting every agent except ``exclude``."""
        if isinstance(exclude, str):
            skipped = {exclude}
        else:
            skipped = set(exclude or ())
        names = [name for name in self._agents.names() if name not in skipped]

        agent_name_schema: dict[str, Any] = {
            "type": "string",
            "description": f"Name of the agent to delegate to. Must be one of: {', '.join(names)}",
        }
        if names:
            agent_name_schema["enum"] = names
        spec = ToolSpec(
            name=DELEGATE_TOOL_NAME,
            description=(
                "Delegate a task to a specialized agent. Available agents:\n"
                f"{self._agents.describe(exclude=skipped)}\n\n"
                "Choose the most appropriate agent for the task."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "agent_name": agent_name_schema,
                    "task": {
                        "type": "string",
                        "description": "The specific task to delegate. Be clear and detailed.",
                    },
                    "context": {
                        "type": "string",
                        "description": "Optional additional context or constraints.",
                    },
                    "priority": {
                        "type": "string",
                        "enum": list(PRIORITIES),
                        "description": "Task priority.",
                    },
                },
                "required": ["agent_name", "task"],
            },
            category=ToolCategory.DELEGATION,
        )

        async def _delegate(arguments: Mapping[str, Any]) -> str:
            return await self.delegate(
                str(arguments.get("agent_name") or ""),
                str(arguments.get("task") or ""),
                arguments.get("context") or None,
                str(arguments.get("priority") or "normal"),
            )

        return SimpleTool(spec=spec, handler=_delegate)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        agent: Agent | str,
        task: str,
        context: Mapping[str, Any] | None = None,
    ) -> GenerationResult:
        """Drive ``agent`` as the manager for ``task``.

        Args:
            agent: Manager agent (or its registered name).
            task: The global goal.
            context: Initial values seeded into the shared context.
        """
        manager = self._agents.get_required(agent) if isinstance(agent, str) else agent
        self._global_goal = task
        self._context.set("global_goal", task)
        if context:
            self._context.update(context)

        previous = self._current_agent
        self._current_agent = manager.name
        try:
            return await manager.run(
                task,
                context=self._context,
                extra_tools=[self.generate_delegate_tool(exclude=manager.name)],
                system_prompt=self.build_manager_prompt(manager),
            )
        finally:
            self._current_agent = previous

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_delegation_history(
        self,
        agent_name: str | None = None,
        limit: int | None = None,
    ) -> list[DelegationRecord]:
        history = [record for record in self._history if agent_name is None or record.to_agent == agent_name]
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history

    def delegation_stats(self) -> dict[str, Any]:
        executed = [record for record in self._history if record.blocked_by is None]
        blocked = len(self._history) - len(executed)
        if not executed:
            return {
                "total_delegations": 0,
                "by_agent": {},
                "average_duration_ms": 0.0,
                "success_rate": 0.0,
                "max_depth_reached": 0,
                "blocked": blocked,
            }
        successes = sum(1 for record in executed if record.succeeded)
        return {
            "total_delegations": len(executed),
            "by_agent": dict(Counter(record.to_agent for record in executed)),
            "average_duration_ms": sum(record.duration_ms for record in executed) / len(executed),
            "success_rate": successes / len(executed),
            "max_depth_reached": max(record.depth for record in executed),
            "blocked": blocked,
        }

    def clear_history(self) -> None:
        self._history.clear()

    def __repr__(self) -> str:
        return (
            f"DelegationStack(depth={self.depth}/{self._config.max_depth}, "
            f"current_agent={self._current_agent!r}, history={len(self._history)})"
        )
