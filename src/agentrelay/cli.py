"""Command-line entry point for agentrelay."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence, TextIO

from .ai.orchestration.tools import ToolRegistry
from .mcp.server import McpServer
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

__all__ = ["main", "load_registry", "configure_logging", "settings_payload"]

LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    """Route process logs to stderr (and ``AGENTRELAY_LOG_DIR`` when set)."""

    log_file = logging_utils.setup_logging(logging_utils.LoggingConfig.from_env(debug=debug))
    if log_file is not None:
        LOGGER.debug("Writing logs to %s", log_file)


def load_registry(target: str) -> ToolRegistry:
    """Resolve ``package.module:attribute`` to a :class:`ToolRegistry`.

    The attribute may be a registry or a zero-argument factory returning one.
    """

    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {target!r}")
    module = importlib.import_module(module_name)
    try:
        value: Any = getattr(module, attribute)
    except AttributeError as exc:
        raise ValueError(f"Module {module_name!r} has no attribute {attribute!r}") from exc
    if callable(value) and not isinstance(value, ToolRegistry):
        value = value()
    if not isinstance(value, ToolRegistry):
        raise ValueError(f"{target!r} is not a ToolRegistry (got {type(value).__name__})")
    return value


def settings_payload(settings: Settings) -> dict[str, Any]:
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    return payload


def main(argv: Sequence[str] | None = None, *, stdin: TextIO | None = None, stdout: TextIO | None = None) -> int:
    """Entry point invoked by the ``agentrelay`` console script."""

    args = _parse_cli_args(argv)
    settings_path = args.settings_path or os.environ.get("AGENTRELAY_SETTINGS_PATH")
    settings = SettingsStore(Path(settings_path).expanduser() if settings_path else None).load()
    configure_logging(args.debug or settings.debug_logging)
    out = stdout or sys.stdout

    if args.command == "settings":
        out.write(json.dumps(settings_payload(settings), indent=2, sort_keys=True) + "\n")
        return 0

    try:
        registry = load_registry(args.target)
    except (ImportError, ValueError) as exc:
        print(f"Cannot load tools: {exc}", file=sys.stderr)
        return 2
    server = McpServer(name=args.name, strict_initialization=args.strict)
    server.add_registry(registry)
    LOGGER.info("Serving %s tool(s) from %s", len(server.tool_names), args.target)
    asyncio.run(server.serve(stdin, out))
    return 0


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Serve agentrelay tool registries over MCP or inspect the effective settings.",
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level.")
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.agentrelay/settings.json path.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Expose a ToolRegistry as an MCP server on stdio.")
    serve.add_argument("target", metavar="MODULE:ATTR", help="Registry (or factory) to serve.")
    serve.add_argument("--name", default="agentrelay-server", help="Server name reported to clients.")
    serve.add_argument(
        "--strict",
        action="store_true",
        help="Reject tool and resource calls until the initialize handshake completes.",
    )

    commands.add_parser("settings", help="Print the effective settings with secrets redacted.")
    return parser.parse_args(argv)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
