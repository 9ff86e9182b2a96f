"""Shared pytest fixtures."""

from __future__ import annotations

import logging

import pytest

from agentrelay.services import telemetry
from agentrelay.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _reset_telemetry_listeners():
    yield
    telemetry.clear_event_listeners()


@pytest.fixture
def restore_root_logging():
    """Undo handlers and levels installed by ``setup_logging``."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    library_levels = {name: logging.getLogger(name).level for name in ("httpx", "httpcore", "openai", "asyncio")}
    yield
    logging_utils.setup_logging(logging_utils.LoggingConfig(console=False))
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, library_level in library_levels.items():
        logging.getLogger(name).setLevel(library_level)
