"""Settings dataclass for CONDUIT configuration.

This module defines the Settings dataclass that holds the default execution
policy consumed by providers (sandbox, approval, turn limits, timeouts).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

CODEX_SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")
CODEX_APPROVAL_POLICIES = ("untrusted", "on-failure", "on-request", "never")

# Seconds a backend may stay silent before it is killed
DEFAULT_IDLE_TIMEOUT = 30.0


@dataclass
class Settings:
    """Configuration settings for CONDUIT.

    All settings have sensible defaults and can be loaded from the global
    configuration file (~/.conduit-config), a local ``.conduit`` file, or
    environment variables.

    Attributes:
        default_provider: Provider used when no registration claims a model
        codex_sandbox_mode: Codex sandbox mode (read-only, workspace-write, danger-full-access)
        codex_approval_policy: Codex approval policy (untrusted, on-failure, on-request, never)
        codex_enable_web_search: Pass --search to Codex
        codex_enable_images: Forward image attachments to Codex
        codex_additional_dirs: Comma-separated extra writable directories for Codex
        codex_auto_load_agents: Prepend AGENTS.md instructions to the system prompt
        default_max_turns: Turn cap applied when a request does not set one (0 = none)
        subprocess_idle_timeout: Seconds without output before a backend is killed
            (default 30, 0 = never)
    """

    # Provider selection
    default_provider: str = ""

    # Codex execution policy
    codex_sandbox_mode: str = "workspace-write"
    codex_approval_policy: str = "on-request"
    codex_enable_web_search: bool = False
    codex_enable_images: bool = True
    codex_additional_dirs: str = ""
    codex_auto_load_agents: bool = False

    # Execution limits
    default_max_turns: int = 0
    subprocess_idle_timeout: float = DEFAULT_IDLE_TIMEOUT

    # Config key to attribute mapping
    _key_mapping: dict[str, str] = field(
        default_factory=lambda: {
            "DEFAULT_PROVIDER": "default_provider",
            "CODEX_SANDBOX_MODE": "codex_sandbox_mode",
            "CODEX_APPROVAL_POLICY": "codex_approval_policy",
            "CODEX_ENABLE_WEB_SEARCH": "codex_enable_web_search",
            "CODEX_ENABLE_IMAGES": "codex_enable_images",
            "CODEX_ADDITIONAL_DIRS": "codex_additional_dirs",
            "CODEX_AUTO_LOAD_AGENTS": "codex_auto_load_agents",
            "DEFAULT_MAX_TURNS": "default_max_turns",
            "SUBPROCESS_IDLE_TIMEOUT": "subprocess_idle_timeout",
        },
        repr=False,
    )

    def get_attribute_for_key(self, key: str) -> str | None:
        """Get the attribute name for a config key."""
        return self._key_mapping.get(key)

    def get_key_for_attribute(self, attr: str) -> str | None:
        """Get the config key for an attribute name."""
        for key, value in self._key_mapping.items():
            if value == attr:
                return key
        return None

    @classmethod
    def get_config_keys(cls) -> list[str]:
        """Get list of all valid configuration keys."""
        temp = cls()
        return list(temp._key_mapping.keys())

    def get_codex_additional_dirs(self) -> list[str]:
        """Split CODEX_ADDITIONAL_DIRS into a list, dropping blanks."""
        return [d.strip() for d in self.codex_additional_dirs.split(",") if d.strip()]

    def get_idle_timeout(self) -> float | None:
        """Idle timeout in seconds, or None when disabled."""
        return self.subprocess_idle_timeout if self.subprocess_idle_timeout > 0 else None


# Default configuration file path
CONFIG_FILE = Path.home() / ".conduit-config"


__all__ = [
    "Settings",
    "CONFIG_FILE",
    "CODEX_SANDBOX_MODES",
    "CODEX_APPROVAL_POLICIES",
    "DEFAULT_IDLE_TIMEOUT",
]
