"""Configuration management for CONDUIT."""

from conduit.config.manager import ConfigManager, get_global_settings, reset_global_settings
from conduit.config.settings import CONFIG_FILE, Settings

__all__ = [
    "ConfigManager",
    "Settings",
    "CONFIG_FILE",
    "get_global_settings",
    "reset_global_settings",
]
