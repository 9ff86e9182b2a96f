"""Tests for services/settings.py and the config dataclasses."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentrelay.ai.ai_types import DelegationConfig, DriverConfig, GuardrailPolicy, RetryPolicy
from agentrelay.services.settings import McpServerConfig, Settings, SettingsStore, redact_secret


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENTRELAY_API_KEY",
        "AGENTRELAY_MODEL",
        "AGENTRELAY_BASE_URL",
        "AGENTRELAY_ORGANIZATION",
        "AGENTRELAY_DEBUG_LOGGING",
        "AGENTRELAY_PARALLEL_TOOL_CALLS",
        "AGENTRELAY_GUARDRAILS",
        "AGENTRELAY_REQUEST_TIMEOUT",
        "AGENTRELAY_TEMPERATURE",
        "AGENTRELAY_MCP_TIMEOUT",
        "AGENTRELAY_MAX_RETRIES",
        "AGENTRELAY_MAX_TOOL_ITERATIONS",
        "AGENTRELAY_MAX_DELEGATION_DEPTH",
    ):
        monkeypatch.delenv(name, raising=False)


# -----------------------------------------------------------------------------
# Tests: SettingsStore
# -----------------------------------------------------------------------------


class TestSettingsStore:
    """JSON persistence with environment overrides."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        settings = SettingsStore(tmp_path / "settings.json").load()

        assert settings == Settings()

    def test_corrupt_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")

        assert SettingsStore(path).load() == Settings()

    def test_round_trip_without_api_key(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path / "nested" / "settings.json")
        original = Settings(
            api_key="sk-secret",
            model="gpt-test",
            max_delegation_depth=3,
            mcp_servers={"files": McpServerConfig(command="mcp-files", args=["--root", "/tmp"])},
        )

        path = store.save(original)
        stored = json.loads(path.read_text(encoding="utf-8"))
        loaded = store.load()

        assert "api_key" not in stored
        assert stored["version"] == 1
        assert loaded.api_key == ""
        assert loaded.model == "gpt-test"
        assert loaded.max_delegation_depth == 3
        assert loaded.mcp_servers["files"].args == ["--root", "/tmp"]

    def test_unknown_keys_and_bad_servers_are_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps(
                {
                    "model": "m",
                    "mystery": True,
                    "mcp_servers": {"ok": {"command": "run"}, "broken": {"args": []}, "junk": 3},
                }
            ),
            encoding="utf-8",
        )

        settings = SettingsStore(path).load()

        assert settings.model == "m"
        assert list(settings.mcp_servers) == ["ok"]

    def test_environment_then_caller_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENTRELAY_API_KEY", "env-key")
        monkeypatch.setenv("AGENTRELAY_MODEL", "env-model")
        monkeypatch.setenv("AGENTRELAY_DEBUG_LOGGING", "yes")
        monkeypatch.setenv("AGENTRELAY_MAX_TOOL_ITERATIONS", "4")
        monkeypatch.setenv("AGENTRELAY_TEMPERATURE", "0.7")
        monkeypatch.setenv("AGENTRELAY_MAX_RETRIES", "many")

        settings = SettingsStore(tmp_path / "settings.json").load(overrides={"model": "caller-model", "nope": 1})

        assert settings.api_key == "env-key"
        assert settings.model == "caller-model"
        assert settings.debug_logging is True
        assert settings.max_tool_iterations == 4
        assert settings.temperature == pytest.approx(0.7)
        assert settings.max_retries == Settings().max_retries


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abc") == "***"
    assert redact_secret("sk-123456") == "sk*****56"


# -----------------------------------------------------------------------------
# Tests: config dataclasses
# -----------------------------------------------------------------------------


def test_configs_from_settings_are_clamped() -> None:
    settings = Settings(
        max_tool_iterations=0,
        max_delegation_depth=500,
        max_steps_per_agent=-3,
        guardrail_window=4,
        guardrail_min_history=9,
        guardrails_enabled=False,
    )

    driver = DriverConfig.from_settings(settings)
    delegation = DelegationConfig.from_settings(settings)

    assert driver.max_steps == 1
    assert delegation.max_depth == 50
    assert delegation.max_steps_per_agent == 1
    assert delegation.guardrails.enabled is False
    assert delegation.guardrails.min_history == 4


def test_retry_policy_delays() -> None:
    policy = RetryPolicy(initial_delay_ms=100, backoff_factor=3, max_delay_ms=500).clamp()

    assert [policy.delay_for(attempt) for attempt in range(4)] == [100, 300, 500, 500]


def test_guardrail_policy_clamp() -> None:
    policy = GuardrailPolicy(window=0, max_repeats=0, min_history=-1).clamp()

    assert (policy.window, policy.max_repeats, policy.min_history) == (1, 1, 0)
