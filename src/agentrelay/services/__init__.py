"""Service layer helpers (settings, telemetry)."""

from .settings import McpServerConfig, Settings, SettingsStore

__all__ = ["McpServerConfig", "Settings", "SettingsStore"]
