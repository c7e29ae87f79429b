"""Provider protocol and base classes.

This module defines the contract for provider integrations:
- Provider: Protocol every provider satisfies
- BaseProvider: Abstract base class with shared logic
- CliProvider: Base for providers that drive an external CLI emitting JSONL
- EventNormalizer: Per-invocation translator from raw records to ProviderMessage
- ToolUseTracker: Per-invocation tool-use correlation table

Callers only ever see ProviderMessage values. Failures detected before a
process is spawned are raised from ``execute_query()``; later failures
become exactly one terminal ErrorMessage. Cancellation ends the stream
without any error.
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import yaml

from conduit.config.manager import get_global_settings
from conduit.integrations.backends.errors import (
    BackendNotInstalledError,
    CliErrorInfo,
    ErrorKind,
    ExecutionCancelled,
    classify_error,
)
from conduit.integrations.backends.types import (
    ErrorMessage,
    ExecutionRequest,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    extract_text,
)
from conduit.platform.cancellation import CancellationToken
from conduit.platform.locator import (
    BackendLocator,
    CliSpawnConfig,
    DetectionResult,
    SpawnStrategy,
    build_command,
)
from conduit.platform.subprocess import (
    ENGINE_ERROR_KEY,
    IDLE_TIMEOUT,
    MALFORMED_OUTPUT,
    SubprocessOptions,
    run_process,
    spawn_jsonl_process,
)
from conduit.utils.logging import debug_raw_output_enabled, log_backend_metadata

logger = logging.getLogger(__name__)

# Generic shell/locale variables forwarded to every backend
BASE_ENV_VARS: tuple[str, ...] = ("PATH", "HOME", "SHELL", "TERM", "USER", "LANG", "LC_ALL")

# Variables Windows processes need to start at all
WINDOWS_ENV_VARS: tuple[str, ...] = (
    "SYSTEMROOT",
    "SystemRoot",
    "APPDATA",
    "LOCALAPPDATA",
    "USERPROFILE",
    "TEMP",
    "TMP",
    "COMSPEC",
    "PATHEXT",
)

VERSION_PROBE_TIMEOUT = 10.0


@dataclass
class ProviderConfig:
    """Per-instance provider configuration.

    Attributes:
        api_key: API key to use instead of the environment
        cli_path: Explicit CLI path; skips detection when set
        env: Extra environment variables forwarded to the child
    """

    api_key: str | None = None
    cli_path: str | None = None
    env: dict[str, str] = field(default_factory=dict)


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML frontmatter from a markdown document.

    If the content starts with ``---`` and the block parses, returns the
    metadata mapping and the stripped body. Otherwise returns an empty
    mapping and the content unchanged.
    """
    if content.startswith("---"):
        parts = content.split("---", 2)
        if len(parts) >= 3:
            try:
                frontmatter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError as e:
                logger.warning("Failed to parse frontmatter", extra={"error": str(e)})
                return {}, content
            if isinstance(frontmatter, dict):
                return frontmatter, parts[2].strip()
    return {}, content


def resolve_system_prompt(system_prompt: Any) -> str | None:
    """Text of a system prompt given as a string or an ``{"append": ...}`` preset."""
    if not system_prompt:
        return None
    if isinstance(system_prompt, str):
        return system_prompt
    if isinstance(system_prompt, dict):
        append = system_prompt.get("append")
        if isinstance(append, str):
            return append
    return None


MIN_MAX_TURNS = 1


def resolve_max_turns(value: Any) -> int | None:
    """Floor a turn cap; anything non-numeric, non-finite or below 1 means no cap."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    normalized = math.floor(value)
    return normalized if normalized >= MIN_MAX_TURNS else None


def filter_env(allowed: tuple[str, ...], extra: dict[str, str] | None = None) -> dict[str, str]:
    """Copy only allow-listed, non-empty variables from the host environment."""
    names = allowed + (WINDOWS_ENV_VARS if sys.platform == "win32" else ())
    env = {key: os.environ[key] for key in names if os.environ.get(key)}
    if extra:
        env.update(extra)
    return env


class ToolUseTracker:
    """Correlates tool starts with their results within one invocation.

    Records that carry a native identifier are matched by it. Records
    without one are paired first-in-first-out.
    """

    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self._ids_by_item: dict[str, str] = {}
        self._anonymous: deque[str] = deque()
        self._sequence = 0

    def next_id(self) -> str:
        """Allocate an id that no result will be paired with."""
        self._sequence += 1
        return f"{self._prefix}{self._sequence}"

    def register(self, item_id: str | None) -> str:
        """Allocate a tool-use id for a starting tool call."""
        tool_use_id = self.next_id()
        if item_id:
            self._ids_by_item[item_id] = tool_use_id
        else:
            self._anonymous.append(tool_use_id)
        return tool_use_id

    def resolve(self, item_id: str | None) -> str | None:
        """Find the tool-use id for a completed tool call, or None."""
        if item_id:
            tool_use_id = self._ids_by_item.pop(item_id, None)
            if tool_use_id:
                return tool_use_id
        if self._anonymous:
            return self._anonymous.popleft()
        return None

    @property
    def pending(self) -> int:
        return len(self._ids_by_item) + len(self._anonymous)


class EventNormalizer(ABC):
    """Translates one invocation's raw records into ProviderMessage values.

    A new normalizer is created for every invocation so that correlation
    tables and de-duplication state never leak between invocations.

    Subclasses implement ``decode()`` for dict records. Engine-generated
    error records are handled here: malformed lines are logged and
    dropped, idle timeouts and non-zero exits become ErrorMessage values.
    """

    def __init__(
        self,
        cli_name: str = "backend",
        session_id: str | None = None,
        map_error: Callable[[str, int | None], CliErrorInfo] | None = None,
    ) -> None:
        self.cli_name = cli_name
        self.session_id = session_id
        self._map_error = map_error

    def normalize(self, record: Any) -> list[ProviderMessage]:
        if debug_raw_output_enabled():
            logger.debug("Raw backend record", extra={"backend": self.cli_name, "record": record})

        if isinstance(record, dict) and ENGINE_ERROR_KEY in record:
            return self._engine_error(record)

        messages = self.decode(record) if isinstance(record, dict) else self.fallback(record)
        if not messages and debug_raw_output_enabled():
            logger.debug("Dropped backend record", extra={"backend": self.cli_name})
        return messages

    @abstractmethod
    def decode(self, record: dict[str, Any]) -> list[ProviderMessage]:
        """Map one backend-native record; return [] to drop it."""
        ...

    def fallback(self, record: Any) -> list[ProviderMessage]:
        """Handle records that are not JSON objects. Dropped by default."""
        logger.debug(
            "Ignoring non-object record",
            extra={"backend": self.cli_name, "record_type": type(record).__name__},
        )
        return []

    def _engine_error(self, record: dict[str, Any]) -> list[ProviderMessage]:
        cause = record.get(ENGINE_ERROR_KEY)
        text = str(record.get("error") or "")

        if cause == MALFORMED_OUTPUT:
            logger.warning(
                "Skipping malformed backend output",
                extra={"backend": self.cli_name, "error": text},
            )
            return []

        if cause == IDLE_TIMEOUT:
            return [
                ErrorMessage(
                    error=text,
                    suggestion=(
                        "The backend stopped responding. Try again or raise the idle timeout."
                    ),
                    kind=ErrorKind.TIMEOUT.value,
                    session_id=self.session_id,
                )
            ]

        exit_code = record.get("exit_code")
        if self._map_error is not None:
            info: CliErrorInfo = self._map_error(text, exit_code)
        else:
            info = classify_error(text, exit_code, cli_name=self.cli_name)
        return [
            ErrorMessage(
                error=text,
                suggestion=info.suggestion,
                kind=info.kind.value,
                session_id=self.session_id,
            )
        ]


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider integrations.

    This is the whole contract a host application depends on.
    """

    @property
    def name(self) -> str:
        """Registry name, e.g. 'codex'."""
        ...

    def execute_query(self, request: ExecutionRequest) -> Iterator[ProviderMessage]:
        """Run one request and return its message stream.

        Raises:
            BackendNotInstalledError: If no execution path exists.
            BackendNotAuthenticatedError: If the backend is not logged in.
        """
        ...

    def detect_installation(self) -> InstallationStatus:
        ...

    def get_available_models(self) -> list[ModelDefinition]:
        ...


class BaseProvider(ABC):
    """Abstract base class with functionality shared by all providers.

    Concrete providers extend this class and implement ``execute_query``,
    ``detect_installation`` and ``get_available_models``.
    """

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config or ProviderConfig()

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def execute_query(self, request: ExecutionRequest) -> Iterator[ProviderMessage]:
        ...

    @abstractmethod
    def detect_installation(self) -> InstallationStatus:
        ...

    @abstractmethod
    def get_available_models(self) -> list[ModelDefinition]:
        ...

    def supports_feature(self, feature: str) -> bool:
        """Whether the provider supports an optional feature ("tools", "text", "vision", ...)."""
        return feature in ("tools", "text")

    def close(self) -> None:  # noqa: B027
        """Release any resources held by the provider. No-op by default."""
        pass

    def _guard_stream(
        self,
        stream: Iterator[ProviderMessage],
        cancellation: CancellationToken | None,
    ) -> Iterator[ProviderMessage]:
        """Apply the terminal-error and cancellation rules to a message stream.

        Exceptions escaping ``stream`` become exactly one ErrorMessage.
        Cancellation stops the stream without an error.
        """
        try:
            for message in stream:
                if cancellation is not None and cancellation.cancelled:
                    return
                yield message
        except ExecutionCancelled:
            logger.debug("Query cancelled", extra={"provider": self.name})
            return
        except Exception as e:
            if cancellation is not None and cancellation.cancelled:
                logger.debug("Query cancelled", extra={"provider": self.name})
                return
            yield self._error_message(e)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def _error_message(self, error: Exception) -> ErrorMessage:
        info = classify_error(error, cli_name=self.name)
        logger.error(
            "Provider query failed",
            extra={"provider": self.name, "kind": info.kind.value, "error": str(error)},
            exc_info=info.kind == ErrorKind.UNKNOWN_ERROR,
        )
        return ErrorMessage(error=info.message, suggestion=info.suggestion, kind=info.kind.value)


class CliProvider(BaseProvider):
    """Base for providers that run an external CLI emitting JSONL.

    Subclasses supply the spawn configuration, argument building, stdin
    text and an EventNormalizer. Detection is lazy and memoized for the
    lifetime of the provider instance.
    """

    # Host environment variables forwarded to the child
    env_allowlist: tuple[str, ...] = BASE_ENV_VARS
    locator_class: type[BackendLocator] = BackendLocator

    def __init__(self, config: ProviderConfig | None = None) -> None:
        super().__init__(config)
        self._locator: BackendLocator | None = None

    @property
    def cli_name(self) -> str:
        return self.locator.cli_name

    @abstractmethod
    def get_spawn_config(self) -> CliSpawnConfig:
        ...

    @abstractmethod
    def build_cli_args(self, request: ExecutionRequest) -> list[str]:
        ...

    @abstractmethod
    def create_normalizer(self, request: ExecutionRequest) -> EventNormalizer:
        ...

    def build_stdin(self, request: ExecutionRequest) -> str | None:
        """Text written to the CLI's stdin. The prompt never goes on argv."""
        return extract_text(request.prompt)

    def map_error(self, stderr: str, exit_code: int | None) -> CliErrorInfo:
        """Map CLI stderr and exit code to error info. Override for CLI-specific hints."""
        return classify_error(stderr, exit_code, cli_name=self.cli_name)

    def get_install_instructions(self) -> str:
        return self.locator.install_instructions()

    def has_api_key(self) -> bool:
        return bool(self.config.api_key)

    def is_authenticated(self) -> bool:
        """Best-effort login check; True unless a subclass knows better."""
        return True

    @property
    def locator(self) -> BackendLocator:
        if self._locator is None:
            self._locator = self.locator_class(self.get_spawn_config())
        return self._locator

    def ensure_detected(self, cancellation: CancellationToken | None = None) -> DetectionResult:
        """Return the memoized detection result, probing on first use."""
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        if self.config.cli_path:
            return DetectionResult(cli_path=self.config.cli_path, strategy=SpawnStrategy.DIRECT)
        return self.locator.detected()

    def build_env(self) -> dict[str, str]:
        return filter_env(self.env_allowlist, self.config.env)

    def require_installation(
        self, cancellation: CancellationToken | None = None
    ) -> DetectionResult:
        """Return the detection result or raise if the CLI is missing."""
        detection = self.ensure_detected(cancellation)
        if not detection.installed:
            raise BackendNotInstalledError(
                f"{self.cli_name} CLI not found. {self.get_install_instructions()}"
            )
        return detection

    def build_subprocess_options(
        self, request: ExecutionRequest, cli_args: list[str]
    ) -> SubprocessOptions:
        detection = self.require_installation(request.cancellation)
        cwd = request.cwd or os.getcwd()
        command, args = build_command(detection, cli_args, cwd)
        idle_timeout = get_global_settings().get_idle_timeout()
        log_backend_metadata(self.name, model=request.model, timeout=idle_timeout)

        return SubprocessOptions(
            command=command,
            args=args,
            cwd=cwd,
            env=self.build_env(),
            stdin_data=self.build_stdin(request),
            cancellation=request.cancellation,
            idle_timeout=idle_timeout,
        )

    def execute_query(self, request: ExecutionRequest) -> Iterator[ProviderMessage]:
        """Stream a request through the CLI.

        Only the installation check runs eagerly. Argument building and
        everything after it happen inside the guarded stream, so their
        failures arrive as one ErrorMessage.

        Raises:
            BackendNotInstalledError: If the CLI cannot be found. Raised
                before anything is spawned.
        """
        if request.cancellation is not None and request.cancellation.cancelled:
            return iter(())

        self.require_installation(request.cancellation)
        return self._guard_stream(self._run(request), request.cancellation)

    def _run(self, request: ExecutionRequest) -> Iterator[ProviderMessage]:
        options = self.build_subprocess_options(request, self.build_cli_args(request))
        yield from self._stream(options, self.create_normalizer(request))

    def _stream(
        self, options: SubprocessOptions, normalizer: EventNormalizer
    ) -> Iterator[ProviderMessage]:
        for record in spawn_jsonl_process(options):
            yield from normalizer.normalize(record)

    def _installation_method(self, detection: DetectionResult) -> str:
        if detection.use_wsl:
            return "wsl"
        if detection.strategy == SpawnStrategy.NPX:
            return "npm"
        return "cli"

    def detect_installation(self) -> InstallationStatus:
        try:
            detection = self.ensure_detected()
        except OSError as e:
            return InstallationStatus(installed=False, error=str(e))

        version = self._probe_version(detection) if detection.installed else None
        return InstallationStatus(
            installed=detection.installed,
            path=detection.display_path,
            version=version,
            method=self._installation_method(detection),
            has_api_key=self.has_api_key(),
            authenticated=self.is_authenticated(),
        )

    def _probe_version(self, detection: DetectionResult) -> str | None:
        command, args = build_command(detection, ["--version"])
        try:
            result = run_process(
                SubprocessOptions(command=command, args=args, env=self.build_env()),
                timeout=VERSION_PROBE_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"{self.cli_name} --version failed: {e}")
            return None
        version = result.stdout.strip()
        return version or None


__all__ = [
    "Provider",
    "BaseProvider",
    "CliProvider",
    "ProviderConfig",
    "EventNormalizer",
    "ToolUseTracker",
    "parse_frontmatter",
    "resolve_system_prompt",
    "filter_env",
    "resolve_max_turns",
    "BASE_ENV_VARS",
]
