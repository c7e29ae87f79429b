"""Well-known install locations and credential files for backend CLIs.

The path lists feed the last step of CLI detection: when neither the
command search path nor WSL turned up a binary, these locations are
checked in order. The auth-indicator helpers look for the credential
files each CLI writes after ``login``, without validating them.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CODEX_CONFIG_DIR_NAME = ".codex"
CODEX_AUTH_FILENAME = "auth.json"
OPENCODE_CONFIG_DIR_NAME = ".opencode"
OPENCODE_AUTH_FILENAME = "auth.json"
TOKENS_KEY = "tokens"

CODEX_OAUTH_KEYS = ("access_token", "oauth_token")
CODEX_API_KEY_KEYS = ("api_key", "OPENAI_API_KEY")
OPENCODE_OAUTH_KEYS = ("access_token", "oauth_token")
OPENCODE_API_KEY_KEYS = ("api_key", "OPENAI_API_KEY", "ANTHROPIC_API_KEY")


@dataclass
class AuthIndicators:
    """What a CLI's credential file says about its login state.

    Attributes:
        has_auth_file: The credential file exists and is readable
        has_oauth_token: An OAuth/access token is present
        has_api_key: An API key is stored in the file
    """

    has_auth_file: bool = False
    has_oauth_token: bool = False
    has_api_key: bool = False

    @property
    def authenticated(self) -> bool:
        return self.has_oauth_token or self.has_api_key


def _home() -> Path:
    return Path.home()


def _app_data() -> Path:
    return Path(os.environ.get("APPDATA") or _home() / "AppData" / "Roaming")


def _local_app_data() -> Path:
    return Path(os.environ.get("LOCALAPPDATA") or _home() / "AppData" / "Local")


def _nvm_bin_dirs() -> list[Path]:
    versions_dir = Path(os.environ.get("NVM_DIR") or _home() / ".nvm") / "versions" / "node"
    try:
        return [version / "bin" for version in sorted(versions_dir.iterdir())]
    except OSError:
        return []


def _fnm_bin_dirs() -> list[Path]:
    home = _home()
    candidates = [
        home / ".local" / "share" / "fnm" / "node-versions",
        home / ".fnm" / "node-versions",
        home / "Library" / "Application Support" / "fnm" / "node-versions",
    ]
    bin_dirs: list[Path] = []
    for fnm_dir in candidates:
        try:
            versions = sorted(fnm_dir.iterdir())
        except OSError:
            continue
        bin_dirs.extend(version / "installation" / "bin" for version in versions)
    return bin_dirs


def _node_cli_paths(cli_name: str, platform: str) -> list[str]:
    """Locations where npm-style global installs put ``cli_name``."""
    home = _home()
    if platform == "win32":
        app_data = _app_data()
        local_app_data = _local_app_data()
        paths = [
            home / ".local" / "bin" / f"{cli_name}.exe",
            app_data / "npm" / f"{cli_name}.cmd",
            app_data / "npm" / cli_name,
            app_data / ".npm-global" / "bin" / f"{cli_name}.cmd",
            app_data / ".npm-global" / "bin" / cli_name,
            home / ".volta" / "bin" / f"{cli_name}.exe",
            local_app_data / "pnpm" / f"{cli_name}.cmd",
            local_app_data / "pnpm" / cli_name,
        ]
        return [str(p) for p in paths]

    pnpm_home = Path(os.environ.get("PNPM_HOME") or home / ".local" / "share" / "pnpm")
    paths = [
        home / ".local" / "bin" / cli_name,
        Path("/opt/homebrew/bin") / cli_name,
        Path("/usr/local/bin") / cli_name,
        Path("/usr/bin") / cli_name,
        home / ".npm-global" / "bin" / cli_name,
        Path("/home/linuxbrew/.linuxbrew/bin") / cli_name,
        home / ".volta" / "bin" / cli_name,
        pnpm_home / cli_name,
        home / ".yarn" / "bin" / cli_name,
        home / ".config" / "yarn" / "global" / "node_modules" / ".bin" / cli_name,
        Path("/snap/bin") / cli_name,
    ]
    paths.extend(d / cli_name for d in _nvm_bin_dirs())
    paths.extend(d / cli_name for d in _fnm_bin_dirs())
    return [str(p) for p in paths]


def get_codex_cli_paths(platform: str | None = None) -> list[str]:
    return _node_cli_paths("codex", platform or sys.platform)


def get_opencode_cli_paths(platform: str | None = None) -> list[str]:
    platform = platform or sys.platform
    home = _home()
    go_bin = Path(os.environ.get("GOPATH") or home / "go") / "bin"
    suffix = ".exe" if platform == "win32" else ""
    paths = _node_cli_paths("opencode", platform)
    paths.append(str(home / "go" / "bin" / f"opencode{suffix}"))
    paths.append(str(go_bin / f"opencode{suffix}"))
    return paths


def get_claude_cli_paths(platform: str | None = None) -> list[str]:
    platform = platform or sys.platform
    home = _home()
    if platform == "win32":
        app_data = _app_data()
        return [
            str(home / ".local" / "bin" / "claude.exe"),
            str(app_data / "npm" / "claude.cmd"),
            str(app_data / "npm" / "claude"),
            str(app_data / ".npm-global" / "bin" / "claude.cmd"),
            str(app_data / ".npm-global" / "bin" / "claude"),
        ]
    return [
        str(home / ".local" / "bin" / "claude"),
        str(home / ".claude" / "local" / "claude"),
        "/usr/local/bin/claude",
        str(home / ".npm-global" / "bin" / "claude"),
    ]


def get_cursor_cli_paths(platform: str | None = None) -> list[str]:
    platform = platform or sys.platform
    if platform == "win32":
        # Cursor Agent runs through WSL on Windows
        return []
    return [
        "~/.local/bin/cursor-agent",
        "/usr/local/bin/cursor-agent",
    ]


def get_cursor_versions_dir() -> Path:
    return _home() / ".local" / "share" / "cursor-agent" / "versions"


def get_codex_config_dir() -> Path:
    return _home() / CODEX_CONFIG_DIR_NAME


def get_codex_auth_path() -> Path:
    return get_codex_config_dir() / CODEX_AUTH_FILENAME


def get_opencode_auth_path() -> Path:
    return _home() / OPENCODE_CONFIG_DIR_NAME / OPENCODE_AUTH_FILENAME


def get_claude_config_dir() -> Path:
    return _home() / ".claude"


def get_claude_credential_paths() -> list[Path]:
    claude_dir = get_claude_config_dir()
    return [claude_dir / ".credentials.json", claude_dir / "credentials.json"]


def get_cursor_credential_paths() -> list[Path]:
    home = _home()
    return [
        home / ".cursor" / "credentials.json",
        home / ".config" / "cursor" / "credentials.json",
    ]


def _has_non_empty_string(record: dict[str, Any], keys: tuple[str, ...]) -> bool:
    return any(isinstance(record.get(key), str) and record.get(key) for key in keys)


def _read_token_file(
    path: Path, oauth_keys: tuple[str, ...], api_key_keys: tuple[str, ...]
) -> AuthIndicators:
    result = AuthIndicators()
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return result
    result.has_auth_file = True

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        logger.debug(f"Unreadable credential file: {path}")
        return result
    if not isinstance(data, dict):
        return result

    result.has_oauth_token = _has_non_empty_string(data, oauth_keys)
    result.has_api_key = _has_non_empty_string(data, api_key_keys)
    tokens = data.get(TOKENS_KEY)
    if isinstance(tokens, dict):
        result.has_oauth_token = result.has_oauth_token or _has_non_empty_string(
            tokens, oauth_keys
        )
        result.has_api_key = result.has_api_key or _has_non_empty_string(tokens, api_key_keys)
    return result


def get_codex_auth_indicators() -> AuthIndicators:
    """Inspect ``~/.codex/auth.json`` (top level and nested ``tokens``)."""
    return _read_token_file(get_codex_auth_path(), CODEX_OAUTH_KEYS, CODEX_API_KEY_KEYS)


def get_opencode_auth_indicators() -> AuthIndicators:
    return _read_token_file(get_opencode_auth_path(), OPENCODE_OAUTH_KEYS, OPENCODE_API_KEY_KEYS)


def get_claude_auth_indicators() -> AuthIndicators:
    """Inspect Claude credential files.

    Supports the CLI format ``{"claudeAiOauth": {"accessToken": ...}}`` as
    well as legacy ``oauth_token``/``access_token`` and ``api_key`` fields.
    """
    for path in get_claude_credential_paths():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            continue
        if not isinstance(data, dict):
            continue
        oauth = data.get("claudeAiOauth")
        has_cli_oauth = isinstance(oauth, dict) and bool(oauth.get("accessToken"))
        return AuthIndicators(
            has_auth_file=True,
            has_oauth_token=has_cli_oauth
            or bool(data.get("oauth_token") or data.get("access_token")),
            has_api_key=bool(data.get("api_key")),
        )
    return AuthIndicators()


def get_cursor_auth_indicators() -> AuthIndicators:
    """Look for a Cursor credential file holding ``accessToken`` or ``token``."""
    for path in get_cursor_credential_paths():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            continue
        if isinstance(data, dict):
            return AuthIndicators(
                has_auth_file=True,
                has_oauth_token=bool(data.get("accessToken") or data.get("token")),
            )
    return AuthIndicators()


__all__ = [
    "AuthIndicators",
    "get_codex_cli_paths",
    "get_opencode_cli_paths",
    "get_claude_cli_paths",
    "get_cursor_cli_paths",
    "get_cursor_versions_dir",
    "get_codex_config_dir",
    "get_codex_auth_path",
    "get_opencode_auth_path",
    "get_claude_config_dir",
    "get_claude_credential_paths",
    "get_cursor_credential_paths",
    "get_codex_auth_indicators",
    "get_opencode_auth_indicators",
    "get_claude_auth_indicators",
    "get_cursor_auth_indicators",
]
