"""Configuration manager for CONDUIT.

Loads configuration values with a cascading hierarchy:

    1. Environment Variables (highest priority)
    2. Local Config (.conduit in project/parent directories)
    3. Global Config (~/.conduit-config)
    4. Built-in Defaults (lowest priority)
"""

from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path

from conduit.config.settings import (
    CODEX_APPROVAL_POLICIES,
    CODEX_SANDBOX_MODES,
    CONFIG_FILE,
    Settings,
)
from conduit.utils.logging import log_message

logger = logging.getLogger(__name__)

# Keys whose values must be one of a fixed set; invalid values keep the default
_ENUM_KEYS: dict[str, tuple[str, ...]] = {
    "CODEX_SANDBOX_MODE": CODEX_SANDBOX_MODES,
    "CODEX_APPROVAL_POLICY": CODEX_APPROVAL_POLICIES,
}


class ConfigManager:
    """Manages configuration loading with cascading hierarchy.

    Configuration Precedence (highest to lowest):
    1. Environment Variables - CI/CD, temporary overrides
    2. Local Config (.conduit) - Project-specific settings
    3. Global Config (~/.conduit-config) - User defaults
    4. Built-in Defaults - Fallback values

    Files are parsed line by line as KEY=VALUE or KEY="VALUE" pairs;
    nothing is evaluated.

    Attributes:
        settings: Current settings instance
        global_config_path: Path to global ~/.conduit-config file
        local_config_path: Path to discovered local .conduit file (after load)
    """

    LOCAL_CONFIG_NAME = ".conduit"
    GLOBAL_CONFIG_NAME = ".conduit-config"

    def __init__(
        self,
        global_config_path: Path | None = None,
        start_dir: Path | None = None,
    ) -> None:
        self.global_config_path = global_config_path or CONFIG_FILE
        self.start_dir = start_dir
        self.local_config_path: Path | None = None
        self.settings = Settings()
        self._raw_values: dict[str, str] = {}
        self._config_sources: dict[str, str] = {}

    def load(self) -> Settings:
        """Load configuration from all sources with cascading precedence.

        Each call starts from clean defaults so stale values never persist
        across loads.

        Returns:
            Settings instance with loaded values
        """
        self.settings = Settings()
        self.local_config_path = None
        self._raw_values = {}
        self._config_sources = {}

        if self.global_config_path.exists():
            log_message(f"Loading global configuration from {self.global_config_path}")
            self._load_file(self.global_config_path, source="global")

        local_path = self._find_local_config()
        if local_path:
            self.local_config_path = local_path
            log_message(f"Loading local configuration from {local_path}")
            self._load_file(local_path, source=f"local ({local_path})")

        self._load_environment()

        for key, value in self._raw_values.items():
            self._apply_value_to_settings(key, value)

        log_message(f"Configuration loaded successfully ({len(self._raw_values)} keys)")
        return self.settings

    def _find_local_config(self) -> Path | None:
        """Find a local .conduit file by walking up from the start directory.

        Stops at the first .conduit file, at a repository root (.git), or at
        the filesystem root.
        """
        current = (self.start_dir or Path.cwd()).resolve()
        while True:
            config_path = current / self.LOCAL_CONFIG_NAME
            if config_path.is_file():
                return config_path

            if (current / ".git").exists():
                break

            parent = current.parent
            if parent == current:
                break
            current = parent

        return None

    def _load_file(self, path: Path, source: str = "file") -> None:
        pattern = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_]*)=(.*)$")

        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning(
                "Could not read configuration file",
                extra={"path": str(path), "error": str(e)},
            )
            return

        for line in lines:
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            match = pattern.match(line)
            if match:
                key, value = match.groups()
                if value.startswith('"') and value.endswith('"') and len(value) >= 2:
                    value = self._unescape_value(value[1:-1])
                elif value.startswith("'") and value.endswith("'") and len(value) >= 2:
                    value = value[1:-1]

                self._raw_values[key] = value
                self._config_sources[key] = source

    def _load_environment(self) -> None:
        """Override config with environment variables for known keys only."""
        for key in Settings.get_config_keys():
            env_value = os.environ.get(key)
            if env_value is not None:
                self._raw_values[key] = env_value
                self._config_sources[key] = "environment"

    def _apply_value_to_settings(self, key: str, value: str) -> None:
        attr = self.settings.get_attribute_for_key(key)
        if attr is None:
            return  # Unknown key, ignore

        current_value = getattr(self.settings, attr)

        if isinstance(current_value, bool):
            setattr(self.settings, attr, value.strip().lower() in ("true", "1", "yes"))
        elif isinstance(current_value, int):
            try:
                setattr(self.settings, attr, int(value))
            except ValueError:
                logger.warning(f"Invalid integer for {key}: {value!r}, keeping default")
        elif isinstance(current_value, float):
            try:
                setattr(self.settings, attr, float(value))
            except ValueError:
                logger.warning(f"Invalid number for {key}: {value!r}, keeping default")
        else:
            allowed = _ENUM_KEYS.get(key)
            if allowed is not None and value not in allowed:
                logger.warning(
                    f"Invalid {key} value '{value}', ignoring. "
                    f"Valid options: {', '.join(allowed)}"
                )
                return
            setattr(self.settings, attr, value)

    @staticmethod
    def _unescape_value(value: str) -> str:
        result = value.replace("\\\\", "\\")
        result = result.replace('\\"', '"')
        return result

    def get(self, key: str, default: str = "") -> str:
        """Get a raw configuration value.

        Args:
            key: Configuration key to retrieve
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self._raw_values.get(key, default)

    def get_source(self, key: str) -> str | None:
        """Where a key's effective value came from (global, local, environment)."""
        return self._config_sources.get(key)


_global_settings: Settings | None = None
_settings_lock = threading.Lock()


def get_global_settings() -> Settings:
    """Return the process-wide settings, loading them on first use.

    A configuration that cannot be loaded falls back to built-in defaults.
    """
    global _global_settings
    with _settings_lock:
        if _global_settings is None:
            try:
                _global_settings = ConfigManager().load()
            except OSError as e:
                logger.warning(
                    "Failed to load configuration, using defaults",
                    extra={"error": str(e)},
                )
                _global_settings = Settings()
        return _global_settings


def reset_global_settings() -> None:
    """Drop the cached settings so the next access reloads them."""
    global _global_settings
    with _settings_lock:
        _global_settings = None


__all__ = [
    "ConfigManager",
    "get_global_settings",
    "reset_global_settings",
]
