"""Tests for conduit.cli module."""

import json
import os
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conduit.cli import app
from conduit.integrations.backends.errors import BackendNotInstalledError, ProviderNotFoundError
from conduit.integrations.backends.factory import ProviderRegistry
from conduit.integrations.backends.types import (
    AssistantMessage,
    ErrorMessage,
    ModelDefinition,
    ResultMessage,
    ToolUseBlock,
    text_message,
)
from conduit.utils.errors import ExitCode
from tests.fakes import FakeProvider, make_successful_provider

runner = CliRunner()


def registry_with(provider: FakeProvider) -> ProviderRegistry:
    registry = ProviderRegistry(default_provider=provider.name)
    registry.register(provider.name, lambda: provider)
    return registry


@pytest.fixture
def use_registry(monkeypatch):
    """Make the CLI's registry bootstrap serve the given fake provider."""

    def _use(provider: FakeProvider) -> FakeProvider:
        registry = registry_with(provider)
        monkeypatch.setattr("conduit.cli.init_registry", lambda: registry)
        return provider

    return _use


class TestCLIVersion:
    """Tests for --version flag."""

    def test_version_flag(self):
        """--version shows version and exits."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.stdout

    def test_short_version_flag(self):
        result = runner.invoke(app, ["-v"])

        assert result.exit_code == 0
        assert "conduit version" in result.stdout


class TestRunCommand:
    """Tests for the run command."""

    def test_json_output(self, use_registry):
        """--json prints one protocol message per line."""
        provider = use_registry(make_successful_provider("All good"))

        result = runner.invoke(app, ["run", "Fix it", "--model", "any-model", "--json"])

        assert result.exit_code == 0
        lines = [json.loads(line) for line in result.stdout.splitlines() if line.strip()]
        assert lines == [
            {
                "type": "assistant",
                "message": {
                    "role": "assistant",
                    "content": [{"type": "text", "text": "All good"}],
                },
            },
            {"type": "result", "subtype": "success", "result": "All good"},
        ]
        request = provider.requests[0]
        assert request.prompt == "Fix it"
        assert request.model == "any-model"
        assert request.allowed_tools is None
        assert os.path.isabs(request.cwd)

    def test_request_options(self, use_registry, tmp_path):
        provider = use_registry(make_successful_provider())

        runner.invoke(
            app,
            ["run", "Hi", "-m", "m", "--no-tools", "--max-turns", "3", "--cwd", str(tmp_path)],
        )

        request = provider.requests[0]
        assert request.allowed_tools == ()
        assert request.max_turns == 3
        assert request.cwd == str(tmp_path)
        assert request.cancellation is not None

    def test_human_output(self, use_registry):
        use_registry(
            FakeProvider(
                [
                    [
                        text_message("Looking around"),
                        AssistantMessage(content=(ToolUseBlock(name="Ls", input={"path": "."}),)),
                        ResultMessage(subtype="success", result="ok"),
                    ]
                ]
            )
        )

        result = runner.invoke(app, ["run", "Explore", "--model", "m"])

        assert result.exit_code == 0
        assert "Looking around" in result.stdout
        assert "> Ls" in result.stdout
        assert "[SUCCESS]" in result.stdout

    def test_error_message_sets_exit_code(self, use_registry):
        use_registry(
            FakeProvider(
                [[ErrorMessage(error="Network connection error", suggestion="Retry later")]]
            )
        )

        result = runner.invoke(app, ["run", "Hi", "--model", "m"])

        assert result.exit_code == ExitCode.GENERAL_ERROR
        assert "Network connection error" in result.output
        assert "Retry later" in result.output

    def test_provider_error_exit_code(self, use_registry):
        provider = FakeProvider()
        provider.raise_on_query = BackendNotInstalledError(
            "codex CLI not found", suggestion="npm install -g @openai/codex"
        )
        use_registry(provider)

        result = runner.invoke(app, ["run", "Hi", "--model", "m"])

        assert result.exit_code == ExitCode.BACKEND_NOT_INSTALLED
        assert "codex CLI not found" in result.output
        assert "npm install -g @openai/codex" in result.output

    def test_unknown_provider_is_config_error(self):
        with patch("conduit.cli.init_registry", return_value=ProviderRegistry("ghost")):
            result = runner.invoke(app, ["run", "Hi", "--model", "m"])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "No provider found for model: m" in result.output

    def test_keyboard_interrupt_cancels(self, use_registry):
        provider = FakeProvider([[text_message("partial")]])
        provider.fail_mid_stream = KeyboardInterrupt()
        use_registry(provider)

        result = runner.invoke(app, ["run", "Hi", "--model", "m"])

        assert result.exit_code == ExitCode.USER_CANCELLED
        assert provider.requests[0].cancellation.cancelled is True
        assert "Operation cancelled by user" in result.stdout

    def test_model_is_required(self):
        result = runner.invoke(app, ["run", "Hi"])

        assert result.exit_code != 0


class TestStatusCommand:
    def test_table(self, use_registry):
        provider = use_registry(FakeProvider(name="fake"))

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "fake" in result.stdout
        assert "/usr/bin/fake" in result.stdout
        assert provider.detect_calls == 1

    def test_json(self, use_registry):
        use_registry(FakeProvider(name="fake", installed=False))

        result = runner.invoke(app, ["status", "--json"])

        data = json.loads(result.stdout)
        assert data["fake"]["installed"] is False
        assert data["fake"]["method"] == "cli"

    def test_invalid_default_provider_is_config_error(self):
        error = ProviderNotFoundError(
            "Unknown provider: ghost", suggestion="Set DEFAULT_PROVIDER to a known backend"
        )

        with patch("conduit.cli.init_registry", side_effect=error):
            result = runner.invoke(app, ["status"])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Unknown provider: ghost" in result.output
        assert "Set DEFAULT_PROVIDER to a known backend" in result.output
        assert "Traceback" not in result.output


class TestModelsCommand:
    def test_lists_models(self, use_registry):
        use_registry(
            FakeProvider(
                models=[
                    ModelDefinition(
                        id="fake-pro",
                        name="Fake Pro",
                        model_string="pro",
                        provider="fake",
                        default=True,
                    )
                ]
            )
        )

        result = runner.invoke(app, ["models"])

        assert result.exit_code == 0
        assert "fake-pro" in result.stdout
        assert "(default)" in result.stdout

    @patch("conduit.cli.discover_remote_models")
    def test_remote_models_appended(self, mock_discover, use_registry):
        use_registry(FakeProvider())
        mock_discover.return_value = [
            ModelDefinition(id="codex-gpt-x", name="gpt-x", model_string="gpt-x", provider="codex")
        ]

        result = runner.invoke(app, ["models", "--remote"])

        assert "codex-gpt-x" in result.stdout
        mock_discover.assert_called_once()

    @patch("conduit.cli.discover_remote_models")
    def test_remote_not_queried_by_default(self, mock_discover, use_registry):
        use_registry(FakeProvider())

        runner.invoke(app, ["models"])

        mock_discover.assert_not_called()

    def test_invalid_default_provider_is_config_error(self):
        with patch(
            "conduit.cli.init_registry",
            side_effect=ProviderNotFoundError("Unknown provider: ghost"),
        ):
            result = runner.invoke(app, ["models"])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Unknown provider: ghost" in result.output
