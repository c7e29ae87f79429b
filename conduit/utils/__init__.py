"""Shared utilities: errors, logging and console output."""

from conduit.utils.errors import (
    ConduitError,
    ConfigError,
    ExitCode,
    UserCancelledError,
)
from conduit.utils.logging import (
    get_logger,
    log_backend_metadata,
    log_command,
    log_message,
    setup_logging,
)

__all__ = [
    "ConduitError",
    "ConfigError",
    "ExitCode",
    "UserCancelledError",
    "get_logger",
    "log_backend_metadata",
    "log_command",
    "log_message",
    "setup_logging",
]
