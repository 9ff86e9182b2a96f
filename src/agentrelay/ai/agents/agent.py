"""Agents and the registry the delegation stack looks them up in."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from ..orchestration.context import ExecutionContext
from ..orchestration.driver import GenerationDriver, GenerationResult, LanguageModel
from ..orchestration.tools import Tool, ToolRegistry

__all__ = ["Agent", "AgentRegistry", "AgentNotFoundError"]

LOGGER = logging.getLogger(__name__)


class AgentNotFoundError(KeyError):
    """Raised when an agent is looked up by a name nobody registered."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


@dataclass(slots=True)
class Agent:
    """A named model persona with its own tools and step budget.

    Attributes:
        name: Unique agent identifier.
        description: One line shown to managers choosing a delegate.
        system_prompt: Prepended as the system message of every run.
        tools: Tools this agent may call.
        model: Backend used by the agent's Generation Driver.
        max_steps: Default tool-executing step budget.
        driver: Optional driver override (hooks, config).
    """

    name: str
    description: str = ""
    system_prompt: str = ""
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    model: LanguageModel | None = None
    max_steps: int = 10
    driver: GenerationDriver | None = None

    async def run(
        self,
        task: str,
        *,
        context: ExecutionContext | None = None,
        extra_tools: Iterable[Tool] = (),
        max_steps: int | None = None,
        system_prompt: str | None = None,
    ) -> GenerationResult:
        """Run ``task`` through this agent's Generation Driver.

        Args:
            task: User message for the run.
            context: Shared state for tool handlers.
            extra_tools: Tools added for this run only (e.g. ``delegate_task``).
            max_steps: Overrides :attr:`max_steps`.
            system_prompt: Overrides :attr:`system_prompt`.
        """
        if self.model is None:
            raise RuntimeError(f"Agent '{self.name}' has no model configured")
        prompt = self.system_prompt if system_prompt is None else system_prompt
        messages: list[dict[str, Any]] = []
        if prompt:
            messages.append({"role": "system", "content": prompt})
        messages.append({"role": "user", "content": task})

        extra = list(extra_tools)
        registry = ToolRegistry.compose(self.tools, extra) if extra else self.tools
        driver = self.driver or GenerationDriver()
        LOGGER.debug("Agent %s starting with %s tool(s)", self.name, len(registry))
        return await driver.run(
            self.model,
            messages,
            registry,
            max_steps if max_steps is not None else self.max_steps,
            context=context,
        )


class AgentRegistry:
    """Name -> :class:`Agent` lookup."""

    def __init__(self, agents: Iterable[Agent] | None = None) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents or ():
            self.register(agent)

    def register(self, agent: Agent, *, allow_override: bool = False) -> Agent:
        if not agent.name:
            raise ValueError("Agents must have a non-empty name")
        if agent.name in self._agents and not allow_override:
            raise ValueError(f"Agent '{agent.name}' is already registered")
        self._agents[agent.name] = agent
        return agent

    def unregister(self, name: str) -> bool:
        return self._agents.pop(name, None) is not None

    def get(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def get_required(self, name: str) -> Agent:
        agent = self._agents.get(name)
        if agent is None:
            raise AgentNotFoundError(name)
        return agent

    def has(self, name: str) -> bool:
        return name in self._agents

    def names(self) -> list[str]:
        return list(self._agents)

    def describe(self, *, exclude: Iterable[str] = ()) -> str:
        """Render ``- name: description`` lines for prompts and tool descriptions."""
        skipped = set(exclude)
        lines = []
        for agent in self._agents.values():
            if agent.name in skipped:
                continue
            lines.append(f"- {agent.name}: {agent.description}" if agent.description else f"- {agent.name}")
        return "\n".join(lines)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator[Agent]:
        return iter(list(self._agents.values()))

    def __len__(self) -> int:
        return len(self._agents)
