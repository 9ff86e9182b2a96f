"""Tests for utils/logging.py."""

from __future__ import annotations

import io
import logging
from pathlib import Path

import pytest

from agentrelay.utils.logging import LOG_FILE_NAME, LoggingConfig, log_file_path, parse_level, setup_logging


def _flush_root() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_console_goes_to_the_given_stream_without_a_file(restore_root_logging: None) -> None:
    stream = io.StringIO()

    assert setup_logging(LoggingConfig(level=logging.DEBUG), stream=stream) is None

    logging.getLogger("agentrelay.test").debug("hello console")
    _flush_root()
    assert "DEBUG   [agentrelay.test] hello console" in stream.getvalue()
    assert log_file_path() is None


def test_log_dir_adds_rotating_file(tmp_path: Path, restore_root_logging: None) -> None:
    log_path = setup_logging(LoggingConfig(log_dir=tmp_path, console=False))

    logging.getLogger("agentrelay.test").info("hello file")
    _flush_root()

    assert log_path == tmp_path / LOG_FILE_NAME == log_file_path()
    assert "[agentrelay.test] hello file" in log_path.read_text(encoding="utf-8")


def test_repeated_setup_replaces_own_handlers_only(restore_root_logging: None) -> None:
    foreign = logging.NullHandler()
    logging.getLogger().addHandler(foreign)
    first, second = io.StringIO(), io.StringIO()

    setup_logging(stream=first)
    setup_logging(stream=second)
    logging.getLogger("agentrelay.test").warning("once")
    _flush_root()

    assert first.getvalue() == ""
    assert second.getvalue().count("once") == 1
    assert foreign in logging.getLogger().handlers


def test_library_loggers_are_quieted(restore_root_logging: None) -> None:
    setup_logging(LoggingConfig(level=logging.DEBUG, console=False))
    assert logging.getLogger("httpx").level == logging.WARNING

    setup_logging(LoggingConfig(level=logging.ERROR, console=False))
    assert logging.getLogger("httpx").level == logging.ERROR


class TestFromEnv:
    """Environment-driven configuration."""

    def test_defaults(self) -> None:
        config = LoggingConfig.from_env(environ={})

        assert config.level == logging.INFO
        assert config.log_dir is None

    def test_level_and_dir(self, tmp_path: Path) -> None:
        environ = {"AGENTRELAY_LOG_LEVEL": "warning", "AGENTRELAY_LOG_DIR": str(tmp_path)}

        config = LoggingConfig.from_env(environ=environ)

        assert config.level == logging.WARNING
        assert config.log_dir == tmp_path

    def test_debug_wins(self) -> None:
        assert LoggingConfig.from_env(debug=True, environ={"AGENTRELAY_LOG_LEVEL": "error"}).level == logging.DEBUG

    def test_unknown_level(self) -> None:
        with pytest.raises(ValueError):
            LoggingConfig.from_env(environ={"AGENTRELAY_LOG_LEVEL": "chatty"})


def test_parse_level() -> None:
    assert parse_level(10) == logging.DEBUG
    assert parse_level(" info ") == logging.INFO
