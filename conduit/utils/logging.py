"""Logging configuration for CONDUIT.

Logging is controlled by environment variables so that host applications
embedding the execution layer can turn on diagnostics without code changes.

Environment Variables:
    CONDUIT_LOG: Set to "true" to enable file logging (default: "false")
    CONDUIT_LOG_FILE: Path to log file (default: ~/.conduit.log)
    CONDUIT_LOG_LEVEL: Minimum level written to the log file (default: INFO)
    CONDUIT_DEBUG_RAW_OUTPUT: Set to "1"/"true" to log every raw backend record
"""

import logging
import os
from pathlib import Path

# Environment variable configuration
LOG_ENABLED = os.environ.get("CONDUIT_LOG", "false").lower() == "true"
LOG_FILE = Path(os.environ.get("CONDUIT_LOG_FILE", str(Path.home() / ".conduit.log")))
LOG_LEVEL = os.environ.get("CONDUIT_LOG_LEVEL", "INFO").upper()

# Module-level logger instance
_logger: logging.Logger | None = None


def setup_logging() -> logging.Logger:
    """Configure the ``conduit`` logger based on environment variables.

    Creates a logger that writes to the configured log file when
    CONDUIT_LOG is set to "true". Otherwise, uses a NullHandler so that
    records only reach handlers the host application installed itself.

    Returns:
        Configured logger instance
    """
    global _logger

    if _logger is not None:
        return _logger

    logger = logging.getLogger("conduit")

    # Clear any existing handlers
    logger.handlers.clear()

    if LOG_ENABLED:
        # Ensure log directory exists
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.FileHandler(LOG_FILE)
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    else:
        logger.addHandler(logging.NullHandler())

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """Get the configured logger instance.

    Returns:
        The configured logger, creating it if necessary
    """
    global _logger
    if _logger is None:
        return setup_logging()
    return _logger


def log_message(message: str) -> None:
    """Log a message if logging is enabled.

    Args:
        message: Message to log
    """
    logger = get_logger()
    logger.info(message)


def log_command(command: str, exit_code: int | None = 0) -> None:
    """Log external command execution with exit code.

    Args:
        command: The command that was executed (never includes prompt text)
        exit_code: The exit code returned by the command
    """
    logger = get_logger()
    logger.info(f"COMMAND: {command} | EXIT_CODE: {exit_code}")


def log_backend_metadata(
    backend_name: str,
    *,
    model: str | None = None,
    timeout: float | None = None,
) -> None:
    """Log sanitized backend invocation metadata for debugging.

    Used by providers to log model/timeout info without leaking prompt
    contents.

    Args:
        backend_name: Name of the backend (e.g. "codex", "cursor")
        model: Model name if specified
        timeout: Idle timeout in seconds if specified
    """
    parts: list[str] = []
    if model:
        parts.append(f"model={model}")
    if timeout is not None:
        parts.append(f"timeout={timeout}s")
    if parts:
        log_message(f"  {backend_name} metadata: {', '.join(parts)}")


def debug_raw_output_enabled() -> bool:
    """Whether raw backend records should be logged as they arrive."""
    return os.environ.get("CONDUIT_DEBUG_RAW_OUTPUT", "").lower() in ("1", "true")


__all__ = [
    "LOG_ENABLED",
    "LOG_FILE",
    "LOG_LEVEL",
    "setup_logging",
    "get_logger",
    "log_message",
    "log_command",
    "log_backend_metadata",
    "debug_raw_output_enabled",
]
