"""Shared pytest fixtures for CONDUIT tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conduit.config.settings import Settings
from conduit.integrations.backends.types import ExecutionRequest


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Pin global settings to built-in defaults so user config never leaks in."""
    settings = Settings()
    monkeypatch.setattr("conduit.config.manager._global_settings", settings)
    return settings


@pytest.fixture(autouse=True)
def clean_backend_env(monkeypatch):
    """Remove credentials and logging switches inherited from the developer shell."""
    for key in (
        "OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "ANTHROPIC_API_KEY",
        "CURSOR_API_KEY",
        "GEMINI_API_KEY",
        "CONDUIT_DEBUG_RAW_OUTPUT",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_request(tmp_path: Path):
    """Factory for ExecutionRequest values rooted in a temp directory."""

    def _make(prompt="Do the thing", model="gpt-5.1-codex", **kwargs) -> ExecutionRequest:
        kwargs.setdefault("cwd", str(tmp_path))
        return ExecutionRequest(prompt=prompt, model=model, **kwargs)

    return _make


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary global config file with sample values."""
    config_file = tmp_path / ".conduit-config"
    config_file.write_text(
        """# CONDUIT Configuration
DEFAULT_PROVIDER="codex"
CODEX_SANDBOX_MODE="read-only"
CODEX_ENABLE_WEB_SEARCH="true"
DEFAULT_MAX_TURNS=12
SUBPROCESS_IDLE_TIMEOUT=45
"""
    )
    return config_file


@pytest.fixture
def mock_console(monkeypatch):
    """Mock console output for testing."""
    mock = MagicMock()
    monkeypatch.setattr("conduit.cli.console", mock)
    return mock
