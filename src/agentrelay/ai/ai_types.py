"""Configuration dataclasses shared across the AI runtime."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.settings import Settings

__all__ = [
    "RetryPolicy",
    "DriverConfig",
    "GuardrailPolicy",
    "DelegationConfig",
]


@dataclass(slots=True)
class RetryPolicy:
    """Backoff configuration for raw HTTP requests."""

    max_retries: int = 2
    initial_delay_ms: float = 2_000.0
    backoff_factor: float = 2.0
    max_delay_ms: float = 60_000.0
    respect_retry_after: bool = True

    def clamp(self) -> RetryPolicy:
        """Clamp values into safe operating ranges and return ``self``."""

        self.max_retries = max(0, min(int(self.max_retries), 10))
        self.initial_delay_ms = max(0.0, float(self.initial_delay_ms))
        self.backoff_factor = max(1.0, float(self.backoff_factor))
        self.max_delay_ms = max(self.initial_delay_ms, float(self.max_delay_ms))
        return self

    def delay_for(self, attempt: int) -> float:
        """Return the delay in milliseconds before retry number ``attempt`` (0-based)."""

        delay = self.initial_delay_ms * (self.backoff_factor ** max(0, attempt))
        return min(delay, self.max_delay_ms)

    def as_metadata(self) -> dict[str, float | int | bool]:
        return asdict(self)


@dataclass(slots=True)
class DriverConfig:
    """Tuning knobs for the generation loop and its dispatcher."""

    max_steps: int = 10
    parallel_tool_calls: bool = False
    fuzzy_match_distance: int = 3
    validate_arguments: bool = True
    tool_timeout_seconds: float | None = None
    parse_embedded_tool_calls: bool = True

    def clamp(self) -> DriverConfig:
        self.max_steps = max(1, min(int(self.max_steps or 1), 100))
        self.fuzzy_match_distance = max(0, int(self.fuzzy_match_distance))
        if self.tool_timeout_seconds is not None:
            self.tool_timeout_seconds = max(0.01, float(self.tool_timeout_seconds))
        return self

    @classmethod
    def from_settings(cls, settings: "Settings") -> DriverConfig:
        return cls(
            max_steps=settings.max_tool_iterations,
            parallel_tool_calls=settings.parallel_tool_calls,
            fuzzy_match_distance=settings.fuzzy_match_distance,
        ).clamp()


@dataclass(slots=True)
class GuardrailPolicy:
    """Heuristics that block delegations suspected of looping or duplicating work.

    Attributes:
        enabled: Master switch for both checks.
        window: Number of most recent delegation records inspected.
        max_repeats: Calls to the same agent inside the window that trip the loop check.
        min_history: Executed records required before the loop check runs.
    """

    enabled: bool = True
    window: int = 5
    max_repeats: int = 3
    min_history: int = 3

    def clamp(self) -> GuardrailPolicy:
        self.window = max(1, int(self.window))
        self.max_repeats = max(1, int(self.max_repeats))
        self.min_history = max(0, min(int(self.min_history), self.window))
        return self

    @classmethod
    def from_settings(cls, settings: "Settings") -> GuardrailPolicy:
        return cls(
            enabled=settings.guardrails_enabled,
            window=settings.guardrail_window,
            max_repeats=settings.guardrail_max_repeats,
            min_history=settings.guardrail_min_history,
        ).clamp()


@dataclass(slots=True)
class DelegationConfig:
    """Limits applied by the delegation stack."""

    max_depth: int = 5
    max_steps_per_agent: int = 10
    allow_nested_delegation: bool = True
    depth_warning_threshold: int = 2
    guardrails: GuardrailPolicy = field(default_factory=GuardrailPolicy)

    def clamp(self) -> DelegationConfig:
        self.max_depth = max(1, min(int(self.max_depth), 50))
        self.max_steps_per_agent = max(1, min(int(self.max_steps_per_agent), 100))
        self.depth_warning_threshold = max(0, int(self.depth_warning_threshold))
        self.guardrails.clamp()
        return self

    @classmethod
    def from_settings(cls, settings: "Settings") -> DelegationConfig:
        return cls(
            max_depth=settings.max_delegation_depth,
            max_steps_per_agent=settings.max_steps_per_agent,
            guardrails=GuardrailPolicy.from_settings(settings),
        ).clamp()
