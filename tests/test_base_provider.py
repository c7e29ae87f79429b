"""Tests for conduit.integrations.backends.base module."""

import sys
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from conduit.integrations.backends.base import (
    BaseProvider,
    CliProvider,
    EventNormalizer,
    Provider,
    ProviderConfig,
    ToolUseTracker,
    filter_env,
    parse_frontmatter,
    resolve_system_prompt,
)
from conduit.integrations.backends.errors import (
    BackendNotInstalledError,
    CliErrorInfo,
    ErrorKind,
    ExecutionCancelled,
)
from conduit.integrations.backends.types import (
    ErrorMessage,
    ProviderMessage,
    ResultMessage,
    text_message,
)
from conduit.platform.cancellation import CancellationToken
from conduit.platform.locator import CliSpawnConfig, DetectionResult, SpawnStrategy
from conduit.platform.subprocess import (
    ENGINE_ERROR_KEY,
    IDLE_TIMEOUT,
    MALFORMED_OUTPUT,
    PROCESS_EXIT,
    ProcessResult,
)
from tests.fakes import FakeProvider


class EchoNormalizer(EventNormalizer):
    """Turns {"text": ...} records into text messages and {"done": ...} into a result."""

    def decode(self, record: dict[str, Any]) -> list[ProviderMessage]:
        if "text" in record:
            return [text_message(record["text"], self.session_id)]
        if "done" in record:
            return [ResultMessage(result=record["done"], session_id=self.session_id)]
        return []


class PythonCliProvider(CliProvider):
    """CliProvider that runs the current interpreter with a script as its 'CLI'."""

    def __init__(self, script: str) -> None:
        super().__init__(ProviderConfig(cli_path=sys.executable))
        self.script = script

    @property
    def name(self) -> str:
        return "python"

    def get_spawn_config(self) -> CliSpawnConfig:
        return CliSpawnConfig(cli_name="python")

    def build_cli_args(self, request) -> list[str]:
        return ["-c", self.script]

    def create_normalizer(self, request) -> EchoNormalizer:
        return EchoNormalizer("python", request.session_id, self.map_error)

    def get_available_models(self):
        return []


class TestParseFrontmatter:
    def test_with_frontmatter(self):
        meta, body = parse_frontmatter("---\nname: reviewer\n---\n\nBody text\n")

        assert meta == {"name": "reviewer"}
        assert body == "Body text"

    def test_without_frontmatter(self):
        assert parse_frontmatter("Just text") == ({}, "Just text")

    def test_invalid_yaml_returns_content_unchanged(self):
        content = "---\nkey: [unclosed\n---\nBody"

        assert parse_frontmatter(content) == ({}, content)

    def test_non_mapping_frontmatter(self):
        content = "---\n- a\n- b\n---\nBody"

        assert parse_frontmatter(content) == ({}, content)


class TestResolveSystemPrompt:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, None),
            ("", None),
            ("Be brief", "Be brief"),
            ({"append": "Extra rules"}, "Extra rules"),
            ({"preset": "default"}, None),
        ],
    )
    def test_values(self, value, expected):
        assert resolve_system_prompt(value) == expected


class TestFilterEnv:
    def test_only_allow_listed_non_empty(self, monkeypatch):
        monkeypatch.setenv("KEEP_ME", "yes")
        monkeypatch.setenv("EMPTY_ONE", "")
        monkeypatch.setenv("SECRET_TOKEN", "nope")

        env = filter_env(("KEEP_ME", "EMPTY_ONE"), {"EXTRA": "1"})

        assert env == {"KEEP_ME": "yes", "EXTRA": "1"}


class TestToolUseTracker:
    def test_matches_by_item_id(self):
        tracker = ToolUseTracker("t-")
        first = tracker.register("item_a")
        second = tracker.register("item_b")

        assert tracker.resolve("item_b") == second
        assert tracker.resolve("item_a") == first
        assert tracker.pending == 0

    def test_anonymous_items_pair_fifo(self):
        tracker = ToolUseTracker("t-")
        first = tracker.register(None)
        second = tracker.register(None)

        assert tracker.resolve(None) == first
        assert tracker.resolve(None) == second

    def test_unknown_result_returns_none(self):
        assert ToolUseTracker("t-").resolve("missing") is None

    def test_ids_are_sequential_with_prefix(self):
        tracker = ToolUseTracker("codex-tool-")

        assert tracker.register("a") == "codex-tool-1"
        assert tracker.next_id() == "codex-tool-2"
        assert tracker.register(None) == "codex-tool-3"


class TestEventNormalizerEngineErrors:
    def test_malformed_output_is_dropped(self, caplog):
        normalizer = EchoNormalizer("tool")
        record = {
            "type": "error",
            "error": "Failed to parse output: x",
            ENGINE_ERROR_KEY: MALFORMED_OUTPUT,
        }

        assert normalizer.normalize(record) == []
        assert "Skipping malformed backend output" in caplog.text

    def test_idle_timeout_is_timeout_error(self):
        normalizer = EchoNormalizer("tool", session_id="s1")
        record = {"type": "error", "error": "Process timed out", ENGINE_ERROR_KEY: IDLE_TIMEOUT}

        [message] = normalizer.normalize(record)

        assert message == ErrorMessage(
            error="Process timed out",
            suggestion="The backend stopped responding. Try again or raise the idle timeout.",
            kind=ErrorKind.TIMEOUT.value,
            session_id="s1",
        )

    def test_process_exit_uses_map_error(self):
        calls = []

        def map_error(stderr, exit_code):
            calls.append((stderr, exit_code))
            return CliErrorInfo(ErrorKind.NETWORK_ERROR, "net", True, "retry")

        normalizer = EchoNormalizer("tool", map_error=map_error)
        record = {
            "type": "error",
            "error": "ECONNRESET",
            ENGINE_ERROR_KEY: PROCESS_EXIT,
            "exit_code": 1,
        }

        [message] = normalizer.normalize(record)

        assert calls == [("ECONNRESET", 1)]
        assert message.error == "ECONNRESET"
        assert message.kind == "NETWORK_ERROR"
        assert message.suggestion == "retry"

    def test_process_exit_without_map_error_classifies(self):
        record = {"type": "error", "error": "", ENGINE_ERROR_KEY: PROCESS_EXIT, "exit_code": 137}

        [message] = EchoNormalizer("tool").normalize(record)

        assert message.kind == "PROCESS_CRASHED"

    def test_non_dict_records_use_fallback(self):
        assert EchoNormalizer("tool").normalize(["a", "list"]) == []

    def test_backend_error_records_go_to_decode(self):
        # No engine marker: a backend's own {"type": "error"} event is not intercepted
        assert EchoNormalizer("tool").normalize({"type": "error", "text": "hi"}) == [
            text_message("hi")
        ]


class TestGuardStream:
    def test_exception_becomes_single_error_message(self):
        provider = FakeProvider([[text_message("partial")]])
        provider.fail_mid_stream = ConnectionError("connection reset")

        messages = list(provider.execute_query(MagicMock(cancellation=None)))

        assert messages[0] == text_message("partial")
        assert len(messages) == 2
        assert isinstance(messages[1], ErrorMessage)
        assert messages[1].kind == "NETWORK_ERROR"

    def test_cancellation_exception_ends_silently(self):
        provider = FakeProvider([[text_message("partial")]])
        provider.fail_mid_stream = ExecutionCancelled()

        messages = list(provider.execute_query(MagicMock(cancellation=None)))

        assert messages == [text_message("partial")]

    def test_cancelled_token_suppresses_messages(self):
        token = CancellationToken()
        token.cancel()
        provider = FakeProvider([[text_message("a"), text_message("b")]])

        messages = list(provider.execute_query(MagicMock(cancellation=token)))

        assert messages == []

    def test_error_after_cancel_is_suppressed(self):
        token = CancellationToken()
        provider = FakeProvider([[text_message("a")]])
        provider.fail_mid_stream = RuntimeError("pipe closed")
        stream = provider.execute_query(MagicMock(cancellation=token))

        first = next(stream)
        token.cancel()

        assert first == text_message("a")
        assert list(stream) == []

    def test_fake_satisfies_protocol(self):
        assert isinstance(FakeProvider(), Provider)
        assert isinstance(FakeProvider(), BaseProvider)


class TestCliProvider:
    def test_streams_through_real_process(self, make_request):
        script = (
            "import json, sys\n"
            "prompt = sys.stdin.read()\n"
            "print(json.dumps({'text': prompt}))\n"
            "print('garbage')\n"
            "print(json.dumps({'done': 'ok'}))\n"
        )
        provider = PythonCliProvider(script)

        messages = list(provider.execute_query(make_request(prompt="hello")))

        assert messages == [text_message("hello"), ResultMessage(result="ok")]

    def test_nonzero_exit_yields_one_terminal_error(self, make_request):
        script = "import sys\nsys.stderr.write('fatal: not authenticated')\nsys.exit(1)\n"
        provider = PythonCliProvider(script)

        messages = list(provider.execute_query(make_request()))

        assert len(messages) == 1
        assert messages[0].kind == "NOT_AUTHENTICATED"
        assert messages[0].error == "fatal: not authenticated"

    def test_cancelled_request_returns_empty_stream(self, make_request):
        token = CancellationToken()
        token.cancel()

        provider = PythonCliProvider("print(1)")

        messages = list(provider.execute_query(make_request(cancellation=token)))

        assert messages == []

    def test_not_installed_raises_before_spawn(self, make_request):
        provider = PythonCliProvider("print(1)")
        provider.config.cli_path = None
        provider._locator = MagicMock()
        provider._locator.detected.return_value = DetectionResult(
            cli_path=None, strategy=SpawnStrategy.NATIVE
        )
        provider._locator.install_instructions.return_value = "Install it."
        provider._locator.cli_name = "python"

        with patch("conduit.integrations.backends.base.spawn_jsonl_process") as spawn:
            with pytest.raises(BackendNotInstalledError, match="python CLI not found"):
                provider.execute_query(make_request())

        spawn.assert_not_called()

    def test_argument_failure_becomes_one_error_message(self, make_request):
        provider = PythonCliProvider("print(1)")
        provider.build_cli_args = MagicMock(
            side_effect=OverflowError("cannot convert float infinity to integer")
        )

        with patch("conduit.integrations.backends.base.spawn_jsonl_process") as spawn:
            stream = provider.execute_query(make_request(max_turns=float("inf")))
            messages = list(stream)

        assert len(messages) == 1
        assert isinstance(messages[0], ErrorMessage)
        assert "cannot convert float infinity" in messages[0].error
        spawn.assert_not_called()

    def test_subprocess_options_carry_idle_timeout(self, make_request, default_settings):
        default_settings.subprocess_idle_timeout = 45
        provider = PythonCliProvider("print(1)")

        options = provider.build_subprocess_options(make_request(), ["-c", "print(1)"])

        assert options.command == sys.executable
        assert options.idle_timeout == 45
        assert options.stdin_data == "Do the thing"

    def test_default_features_are_tools_and_text(self):
        provider = PythonCliProvider("print(1)")

        assert provider.supports_feature("tools") is True
        assert provider.supports_feature("text") is True
        assert provider.supports_feature("vision") is False

    def test_detect_installation_probes_version(self):
        provider = PythonCliProvider("print(1)")

        with patch(
            "conduit.integrations.backends.base.run_process",
            return_value=ProcessResult(stdout="1.2.3\n", stderr="", exit_code=0),
        ):
            status = provider.detect_installation()

        assert status.installed is True
        assert status.version == "1.2.3"
        assert status.method == "cli"
        assert status.path == sys.executable

    def test_detect_installation_version_timeout(self):
        import subprocess

        provider = PythonCliProvider("print(1)")

        with patch(
            "conduit.integrations.backends.base.run_process",
            side_effect=subprocess.TimeoutExpired("python", 10),
        ):
            status = provider.detect_installation()

        assert status.installed is True
        assert status.version is None
