"""Tests for conduit.platform.system_paths module."""

import json

import pytest

from conduit.platform import system_paths
from conduit.platform.system_paths import (
    AuthIndicators,
    get_claude_auth_indicators,
    get_claude_cli_paths,
    get_codex_auth_indicators,
    get_codex_cli_paths,
    get_cursor_auth_indicators,
    get_cursor_cli_paths,
    get_opencode_auth_indicators,
    get_opencode_cli_paths,
)


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Point every well-known location at an empty temporary home."""
    monkeypatch.setattr(system_paths, "_home", lambda: tmp_path)
    for var in ("APPDATA", "LOCALAPPDATA", "NVM_DIR", "PNPM_HOME", "GOPATH"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def write_json(path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)


class TestAuthIndicators:
    def test_file_alone_is_not_authenticated(self):
        assert AuthIndicators(has_auth_file=True).authenticated is False

    @pytest.mark.parametrize("field", ["has_oauth_token", "has_api_key"])
    def test_token_or_key_authenticates(self, field):
        assert AuthIndicators(**{field: True}).authenticated is True


class TestCliPaths:
    def test_codex_unix_paths(self, home):
        paths = get_codex_cli_paths("linux")

        assert paths[0] == str(home / ".local" / "bin" / "codex")
        assert "/usr/local/bin/codex" in paths

    def test_codex_windows_paths(self, home, monkeypatch):
        monkeypatch.setenv("APPDATA", str(home / "Roaming"))

        paths = get_codex_cli_paths("win32")

        assert str(home / "Roaming" / "npm" / "codex.cmd") in paths
        assert all("/usr" not in p for p in paths)

    def test_nvm_versions_are_scanned(self, home):
        (home / ".nvm" / "versions" / "node" / "v20.1.0" / "bin").mkdir(parents=True)

        paths = get_codex_cli_paths("linux")

        assert str(home / ".nvm" / "versions" / "node" / "v20.1.0" / "bin" / "codex") in paths

    def test_opencode_includes_go_bin(self, home):
        assert str(home / "go" / "bin" / "opencode.exe") in get_opencode_cli_paths("win32")

    def test_claude_local_install(self, home):
        assert str(home / ".claude" / "local" / "claude") in get_claude_cli_paths("darwin")

    def test_cursor_has_no_windows_paths(self):
        assert get_cursor_cli_paths("win32") == []
        assert "/usr/local/bin/cursor-agent" in get_cursor_cli_paths("linux")


class TestCodexAuthIndicators:
    def test_missing_file(self, home):
        assert get_codex_auth_indicators() == AuthIndicators()

    def test_nested_tokens(self, home):
        write_json(home / ".codex" / "auth.json", {"tokens": {"access_token": "at"}})

        indicators = get_codex_auth_indicators()

        assert indicators.has_auth_file is True
        assert indicators.has_oauth_token is True
        assert indicators.has_api_key is False

    def test_top_level_api_key(self, home):
        write_json(home / ".codex" / "auth.json", {"OPENAI_API_KEY": "sk-x"})

        assert get_codex_auth_indicators().has_api_key is True

    def test_empty_values_do_not_count(self, home):
        write_json(home / ".codex" / "auth.json", {"api_key": "", "access_token": None})

        indicators = get_codex_auth_indicators()

        assert indicators.has_auth_file is True
        assert indicators.authenticated is False

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
    def test_unparseable_file(self, home, content):
        write_json(home / ".codex" / "auth.json", content)

        indicators = get_codex_auth_indicators()

        assert indicators.has_auth_file is True
        assert indicators.authenticated is False


class TestOtherAuthIndicators:
    def test_opencode_vendor_key(self, home):
        write_json(home / ".opencode" / "auth.json", {"ANTHROPIC_API_KEY": "sk-ant"})

        assert get_opencode_auth_indicators().has_api_key is True

    def test_claude_cli_oauth_format(self, home):
        write_json(
            home / ".claude" / ".credentials.json", {"claudeAiOauth": {"accessToken": "tok"}}
        )

        indicators = get_claude_auth_indicators()

        assert indicators.has_oauth_token is True
        assert indicators.authenticated is True

    def test_claude_falls_back_to_second_file(self, home):
        write_json(home / ".claude" / ".credentials.json", "garbage")
        write_json(home / ".claude" / "credentials.json", {"api_key": "k"})

        indicators = get_claude_auth_indicators()

        assert indicators.has_api_key is True
        assert indicators.has_oauth_token is False

    def test_claude_no_files(self, home):
        assert get_claude_auth_indicators().has_auth_file is False

    def test_cursor_token(self, home):
        write_json(home / ".config" / "cursor" / "credentials.json", {"token": "t"})

        assert get_cursor_auth_indicators().authenticated is True
