"""Provider-related errors and failure classification.

Generic error types shared by every provider. All errors inherit from
ConduitError to get exit code semantics.

Pre-spawn failures (not installed, not authenticated) are raised from
``execute_query()`` before any message is produced. Everything that goes
wrong afterwards is classified with ``classify_error()`` and surfaced as a
single terminal error message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from conduit.platform.cancellation import ExecutionCancelled as ExecutionCancelled
from conduit.utils.errors import ConduitError, ConfigError, ExitCode

# Only match actual rate-limit status codes with word boundaries so that
# identifiers such as "PROJ-4290" are not mistaken for HTTP 429.
_HTTP_RATE_LIMIT_STATUS_RE = re.compile(r"\b429\b")

_COMMON_RATE_LIMIT_KEYWORDS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "quota exceeded",
    "throttl",
)

# Exit codes reported for a SIGKILLed child (shell convention and Popen's negative signal)
_KILLED_EXIT_CODES = (137, -9)


class ErrorKind(str, Enum):
    """Failure taxonomy shared by all providers."""

    NOT_INSTALLED = "NOT_INSTALLED"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROCESS_CRASHED = "PROCESS_CRASHED"
    MALFORMED_OUTPUT = "MALFORMED_OUTPUT"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class CliErrorInfo:
    """Classified failure with a user-facing remediation hint.

    Attributes:
        kind: Failure kind
        message: Human-readable description
        recoverable: Whether retrying later can succeed
        suggestion: What the user should do about it
    """

    kind: ErrorKind
    message: str
    recoverable: bool
    suggestion: str | None = None


class ProviderError(ConduitError):
    """Base class for provider failures.

    Attributes:
        kind: Failure kind
        suggestion: Remediation hint, if any
        recoverable: Whether retrying later can succeed
    """

    default_kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        suggestion: str | None = None,
        recoverable: bool = False,
        exit_code: ExitCode | None = None,
    ) -> None:
        super().__init__(message, exit_code)
        self.kind = kind or self.default_kind
        self.suggestion = suggestion
        self.recoverable = recoverable


class BackendNotInstalledError(ProviderError):
    """Raised when a backend has no usable execution path.

    Example:
        >>> raise BackendNotInstalledError(
        ...     "codex CLI not found. Install with: npm install -g @openai/codex"
        ... )
    """

    _default_exit_code: ClassVar[ExitCode] = ExitCode.BACKEND_NOT_INSTALLED
    default_kind: ClassVar[ErrorKind] = ErrorKind.NOT_INSTALLED


class BackendNotAuthenticatedError(ProviderError):
    """Raised when a backend is installed but not logged in."""

    _default_exit_code: ClassVar[ExitCode] = ExitCode.BACKEND_NOT_AUTHENTICATED
    default_kind: ClassVar[ErrorKind] = ErrorKind.NOT_AUTHENTICATED


class BackendRateLimitError(ProviderError):
    """Raised when a backend hits a rate limit.

    Attributes:
        output: The output that triggered rate limit detection
        backend_name: Name of the backend that hit the rate limit
    """

    default_kind: ClassVar[ErrorKind] = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, output: str = "", backend_name: str = "") -> None:
        super().__init__(
            message,
            suggestion="Wait a few minutes and try again",
            recoverable=True,
        )
        self.output = output
        self.backend_name = backend_name


class BackendTimeoutError(ProviderError):
    """Raised when a backend stops producing output for too long.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded (if known)
    """

    default_kind: ClassVar[ErrorKind] = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout_seconds: float | None = None) -> None:
        super().__init__(
            message,
            suggestion="Try again; the backend may be slow or overloaded",
            recoverable=True,
        )
        self.timeout_seconds = timeout_seconds


class ProviderNotFoundError(ProviderError, ConfigError):
    """Raised when no registered provider matches a name or model."""

    _default_exit_code: ClassVar[ExitCode] = ExitCode.CONFIG_ERROR


def matches_common_rate_limit(
    output: str,
    *,
    extra_keywords: tuple[str, ...] = (),
    extra_status_re: re.Pattern[str] | None = None,
) -> bool:
    """Check if output matches common rate-limit patterns.

    Providers layer their own ``extra_keywords`` / ``extra_status_re`` on
    top of the common set.
    """
    if not output:
        return False
    output_lower = output.lower()
    if _HTTP_RATE_LIMIT_STATUS_RE.search(output_lower):
        return True
    if extra_status_re and extra_status_re.search(output_lower):
        return True
    all_keywords = _COMMON_RATE_LIMIT_KEYWORDS + extra_keywords
    return any(kw in output_lower for kw in all_keywords)


def classify_error(
    error: BaseException | str,
    exit_code: int | None = None,
    cli_name: str = "the CLI",
) -> CliErrorInfo:
    """Classify a failure into an ErrorKind with a remediation hint.

    Args:
        error: The exception, or stderr/message text
        exit_code: Process exit code, when the failure came from a process
        cli_name: CLI name used in the login suggestion

    Returns:
        Classified error info.
    """
    if isinstance(error, ProviderError):
        return CliErrorInfo(
            kind=error.kind,
            message=str(error),
            recoverable=error.recoverable,
            suggestion=error.suggestion,
        )
    if isinstance(error, (FileNotFoundError, PermissionError)):
        return CliErrorInfo(
            kind=ErrorKind.NOT_INSTALLED,
            message=f"{cli_name} could not be started: {error}",
            recoverable=False,
            suggestion=f"Check that {cli_name} is installed and executable",
        )
    if isinstance(error, TimeoutError):
        return CliErrorInfo(
            kind=ErrorKind.TIMEOUT,
            message=str(error) or "Operation timed out",
            recoverable=True,
            suggestion="Try again, or raise SUBPROCESS_IDLE_TIMEOUT",
        )

    text = str(error)
    lower = text.lower()

    if "not authenticated" in lower or "please log in" in lower or "unauthorized" in lower:
        return CliErrorInfo(
            kind=ErrorKind.NOT_AUTHENTICATED,
            message=f"{cli_name} is not authenticated",
            recoverable=True,
            suggestion=f'Run "{cli_name} login" to authenticate',
        )

    if matches_common_rate_limit(text):
        return CliErrorInfo(
            kind=ErrorKind.RATE_LIMITED,
            message="API rate limit exceeded",
            recoverable=True,
            suggestion="Wait a few minutes and try again",
        )

    if any(kw in lower for kw in ("network", "connection", "econnrefused", "timeout")):
        return CliErrorInfo(
            kind=ErrorKind.NETWORK_ERROR,
            message="Network connection error",
            recoverable=True,
            suggestion="Check your internet connection and try again",
        )

    if exit_code in _KILLED_EXIT_CODES or "killed" in lower or "sigterm" in lower:
        return CliErrorInfo(
            kind=ErrorKind.PROCESS_CRASHED,
            message="Process was terminated",
            recoverable=True,
            suggestion="The process may have run out of memory. Try a simpler task.",
        )

    return CliErrorInfo(
        kind=ErrorKind.UNKNOWN_ERROR,
        message=text or f"Process exited with code {exit_code}",
        recoverable=False,
    )


__all__ = [
    "ErrorKind",
    "CliErrorInfo",
    "ProviderError",
    "BackendNotInstalledError",
    "BackendNotAuthenticatedError",
    "BackendRateLimitError",
    "BackendTimeoutError",
    "ProviderNotFoundError",
    "ExecutionCancelled",
    "matches_common_rate_limit",
    "classify_error",
]
