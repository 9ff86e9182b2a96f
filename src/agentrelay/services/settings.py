"""Settings dataclass and JSON persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = ["Settings", "SettingsStore", "McpServerConfig", "redact_secret"]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".agentrelay"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTRELAY_API_KEY": "api_key",
    "AGENTRELAY_BASE_URL": "base_url",
    "AGENTRELAY_MODEL": "model",
    "AGENTRELAY_ORGANIZATION": "organization",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTRELAY_DEBUG_LOGGING": "debug_logging",
    "AGENTRELAY_PARALLEL_TOOL_CALLS": "parallel_tool_calls",
    "AGENTRELAY_GUARDRAILS": "guardrails_enabled",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTRELAY_REQUEST_TIMEOUT": "request_timeout",
    "AGENTRELAY_TEMPERATURE": "temperature",
    "AGENTRELAY_MCP_TIMEOUT": "mcp_request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "AGENTRELAY_MAX_RETRIES": "max_retries",
    "AGENTRELAY_MAX_TOOL_ITERATIONS": "max_tool_iterations",
    "AGENTRELAY_MAX_DELEGATION_DEPTH": "max_delegation_depth",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class McpServerConfig:
    """Launch description for one child-process tool server."""

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "McpServerConfig":
        command = str(payload.get("command") or "").strip()
        if not command:
            raise ValueError("MCP server entries require a 'command'")
        args = [str(item) for item in payload.get("args") or ()]
        env = {str(key): str(value) for key, value in (payload.get("env") or {}).items()}
        return cls(command=command, args=args, env=env)


@dataclass(slots=True)
class Settings:
    """Runtime settings shared by the model client, driver and delegation stack."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tool_iterations: int = 10
    parallel_tool_calls: bool = False
    fuzzy_match_distance: int = 3
    max_delegation_depth: int = 5
    max_steps_per_agent: int = 10
    guardrails_enabled: bool = True
    guardrail_window: int = 5
    guardrail_max_repeats: int = 3
    guardrail_min_history: int = 3
    mcp_request_timeout: float = 30.0
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    mcp_servers: dict[str, McpServerConfig] = field(default_factory=dict)


class SettingsStore:
    """Load and persist :class:`Settings` as JSON on disk."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path or _DEFAULT_SETTINGS_PATH).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying environment then explicit overrides."""

        payload = self._read_payload()
        settings = self._from_payload(payload)
        settings = self._apply_env_overrides(settings)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="caller")
        return settings

    def save(self, settings: Settings) -> Path:
        """Persist ``settings``; the API key never touches disk."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = self._serialize(settings)
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        LOGGER.debug("Saved settings to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        payload = asdict(settings)
        payload.pop("api_key", None)
        payload["version"] = _SETTINGS_VERSION
        return payload

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to read settings from %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            LOGGER.warning("Settings file %s does not contain an object; ignoring.", self._path)
            return {}
        return data

    def _from_payload(self, payload: Mapping[str, Any]) -> Settings:
        filtered = _filter_fields(payload)
        servers = filtered.pop("mcp_servers", None)
        try:
            settings = Settings(**filtered)
        except TypeError as exc:
            LOGGER.warning("Invalid settings payload (%s); using defaults.", exc)
            settings = Settings()
        if isinstance(servers, Mapping):
            settings.mcp_servers = _parse_servers(servers)
        return settings

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str,
    ) -> Settings:
        valid = {item.name for item in fields(Settings)}
        updates: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in valid:
                LOGGER.debug("Ignoring unknown %s override: %s", source, key)
                continue
            if value is None:
                continue
            if key == "mcp_servers" and isinstance(value, Mapping):
                value = _parse_servers(value)
            updates[key] = value
        if not updates:
            return settings
        LOGGER.debug("Applying %s overrides: %s", source, sorted(updates))
        return replace(settings, **updates)

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value)
            except ValueError:
                LOGGER.warning("Ignoring invalid integer for %s: %s", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Ignoring invalid float for %s: %s", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _parse_servers(payload: Mapping[str, Any]) -> dict[str, McpServerConfig]:
    servers: dict[str, McpServerConfig] = {}
    for name, entry in payload.items():
        if isinstance(entry, McpServerConfig):
            servers[str(name)] = entry
            continue
        if not isinstance(entry, Mapping):
            LOGGER.warning("Ignoring MCP server %s: expected an object", name)
            continue
        try:
            servers[str(name)] = McpServerConfig.from_payload(entry)
        except ValueError as exc:
            LOGGER.warning("Ignoring MCP server %s: %s", name, exc)
    return servers


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
