"""Custom exceptions and exit codes for CONDUIT.

This module defines the exit codes and the base exception hierarchy used
throughout the package. Provider-specific error types live in
``conduit.integrations.backends.errors`` and build on ``ConduitError``.
"""

from enum import IntEnum
from typing import ClassVar


class ExitCode(IntEnum):
    """Process exit codes used by the CLI.

    These codes are used for consistent error reporting and can be
    checked by calling scripts or CI systems.
    """

    SUCCESS = 0
    GENERAL_ERROR = 1
    BACKEND_NOT_INSTALLED = 2
    BACKEND_NOT_AUTHENTICATED = 3
    USER_CANCELLED = 4
    CONFIG_ERROR = 5


class ConduitError(Exception):
    """Base exception for CONDUIT errors.

    All custom exceptions in this package inherit from this class.
    Each exception type has an associated exit code for proper error reporting.
    """

    _default_exit_code: ClassVar[ExitCode] = ExitCode.GENERAL_ERROR

    def __init__(self, message: str, exit_code: ExitCode | None = None) -> None:
        """Initialize the exception."""
        super().__init__(message)
        self._exit_code = exit_code

    @property
    def exit_code(self) -> ExitCode:
        """Get the exit code for this exception."""
        if self._exit_code is not None:
            return self._exit_code
        return self.__class__._default_exit_code


class ConfigError(ConduitError):
    """Configuration names something that does not exist.

    Raised when the configured or requested default provider, or the
    provider a model id resolves to, is not registered.
    """

    _default_exit_code: ClassVar[ExitCode] = ExitCode.CONFIG_ERROR


class UserCancelledError(ConduitError):
    """User cancelled the operation.

    Raised by the CLI when the user presses Ctrl+C while a query is
    streaming. Inside the execution layer the ExecutionCancelled subclass
    is caught by providers and ends the stream silently.
    """

    _default_exit_code: ClassVar[ExitCode] = ExitCode.USER_CANCELLED


__all__ = [
    "ExitCode",
    "ConduitError",
    "ConfigError",
    "UserCancelledError",
]
