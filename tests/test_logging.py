"""Tests for conduit.utils.logging module."""

import importlib
import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest

import conduit.utils.logging as logging_module


@pytest.fixture
def reload_logging():
    """Reload the logging module under a patched environment.

    The module is reloaded again with a clean environment afterwards so
    later tests see the defaults.
    """

    def _reload(env: dict[str, str]):
        with patch.dict(os.environ, env, clear=True):
            logging_module._logger = None
            importlib.reload(logging_module)
        return logging_module

    yield _reload

    with patch.dict(os.environ, {}, clear=True):
        logging_module._logger = None
        importlib.reload(logging_module)
    logging.getLogger("conduit").handlers.clear()
    logging_module.setup_logging()


class TestLogging:
    """Tests for logging functionality."""

    def test_log_disabled_by_default(self, reload_logging):
        """Logging is disabled when CONDUIT_LOG is not set."""
        module = reload_logging({})

        assert module.LOG_ENABLED is False
        assert module.LOG_LEVEL == "INFO"

    def test_log_enabled_with_env_var(self, reload_logging, tmp_path):
        module = reload_logging(
            {"CONDUIT_LOG": "TRUE", "CONDUIT_LOG_FILE": str(tmp_path / "c.log")}
        )

        assert module.LOG_ENABLED is True

    def test_log_file_default_path(self, reload_logging):
        module = reload_logging({"HOME": str(Path.home())})

        assert module.LOG_FILE == Path.home() / ".conduit.log"

    def test_setup_logging_uses_null_handler_when_disabled(self, reload_logging):
        module = reload_logging({})

        logger = module.setup_logging()

        assert logger.name == "conduit"
        assert [type(h) for h in logger.handlers] == [logging.NullHandler]
        assert logger.propagate is True

    def test_get_logger_returns_same_instance(self):
        logging_module._logger = None

        assert logging_module.get_logger() is logging_module.get_logger()

    def test_file_logging_writes_messages(self, reload_logging, tmp_path):
        """Messages land in the configured file at the configured level."""
        log_file = tmp_path / "logs" / "conduit.log"
        module = reload_logging(
            {
                "CONDUIT_LOG": "true",
                "CONDUIT_LOG_FILE": str(log_file),
                "CONDUIT_LOG_LEVEL": "debug",
            }
        )

        logger = module.setup_logging()
        module.log_command("codex exec --json", exit_code=0)
        module.log_backend_metadata("codex", model="gpt-5.1", timeout=30.0)
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        content = log_file.read_text()
        assert "COMMAND: codex exec --json | EXIT_CODE: 0" in content
        assert "codex metadata: model=gpt-5.1, timeout=30.0s" in content
        for handler in logger.handlers:
            handler.close()

    def test_metadata_without_fields_logs_nothing(self):
        with patch.object(logging_module, "log_message") as mock_log:
            logging_module.log_backend_metadata("cursor")

        mock_log.assert_not_called()


class TestDebugRawOutput:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("1", True), ("true", True), ("TRUE", True), ("0", False), ("", False), ("yes", False)],
    )
    def test_env_values(self, monkeypatch, value, expected):
        monkeypatch.setenv("CONDUIT_DEBUG_RAW_OUTPUT", value)

        assert logging_module.debug_raw_output_enabled() is expected

    def test_unset(self, monkeypatch):
        monkeypatch.delenv("CONDUIT_DEBUG_RAW_OUTPUT", raising=False)

        assert logging_module.debug_raw_output_enabled() is False
