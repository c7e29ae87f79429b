"""Backend locator: find a CLI and decide how to launch it.

Search order, first match wins:

1. On Windows with the ``wsl`` strategy, look inside WSL.
2. With the ``npx`` strategy, use ``npx <package>`` without probing.
3. The command search path (``which``/``where``, 5 second timeout).
4. A fixed list of common install locations (``~`` is expanded).

Detection runs once per locator and is memoized for its lifetime.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum

from conduit.platform import wsl

logger = logging.getLogger(__name__)

# Timeout for the which/where probe
PATH_SEARCH_TIMEOUT = 5.0


class SpawnStrategy(str, Enum):
    """How a backend CLI gets launched.

    NATIVE: Found on Linux/macOS and executed directly
    WSL: Linux-only CLI executed through wsl.exe on Windows
    NPX: Fetched and run on demand through ``npx <package>``
    DIRECT: Native Windows executable
    CMD: Windows batch shim (.cmd/.bat)
    """

    NATIVE = "native"
    WSL = "wsl"
    NPX = "npx"
    DIRECT = "direct"
    CMD = "cmd"


@dataclass
class CliSpawnConfig:
    """Per-backend launch configuration.

    Attributes:
        cli_name: Executable name, e.g. "codex"
        windows_strategy: Strategy used on Windows
        npx_package: Package passed to npx (required for the npx strategy)
        wsl_distribution: Preferred WSL distribution
        common_paths: Install locations keyed by "linux", "darwin", "win32"
        native_strategy: Strategy on Linux/macOS; set to NPX for package-runner-only backends
    """

    cli_name: str
    windows_strategy: SpawnStrategy = SpawnStrategy.DIRECT
    npx_package: str | None = None
    wsl_distribution: str | None = None
    common_paths: dict[str, list[str]] = field(default_factory=dict)
    native_strategy: SpawnStrategy = SpawnStrategy.NATIVE


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of locating a CLI.

    Attributes:
        cli_path: Executable to spawn ("wsl.exe"/"npx" for bridged strategies), None if not found
        strategy: The strategy that was chosen
        use_wsl: Whether the CLI runs inside WSL
        wsl_cli_path: Linux path of the CLI inside WSL
        wsl_distribution: WSL distribution holding the CLI
        npx_package: Package name for the npx strategy
    """

    cli_path: str | None
    strategy: SpawnStrategy
    use_wsl: bool = False
    wsl_cli_path: str | None = None
    wsl_distribution: str | None = None
    npx_package: str | None = None

    @property
    def installed(self) -> bool:
        return self.cli_path is not None

    @property
    def display_path(self) -> str | None:
        """Human-readable location for status output."""
        if self.use_wsl and self.wsl_cli_path:
            distro = self.wsl_distribution or "default"
            return f"wsl:{distro}:{self.wsl_cli_path}"
        if self.strategy == SpawnStrategy.NPX and self.npx_package:
            return f"npx {self.npx_package}"
        return self.cli_path


def expand_path(path: str) -> str:
    """Expand a leading ``~`` to the home directory."""
    if path.startswith("~"):
        return os.path.expanduser(path)
    return path


def find_in_path(cli_name: str, platform: str | None = None) -> str | None:
    """Probe ``which``/``where`` and return the first result that exists."""
    command = "where" if (platform or sys.platform) == "win32" else "which"
    try:
        result = subprocess.run(
            [command, cli_name],
            capture_output=True,
            text=True,
            timeout=PATH_SEARCH_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"{command} {cli_name} failed: {e}")
        return None

    if result.returncode != 0:
        return None
    lines = result.stdout.strip().splitlines()
    first = lines[0].strip() if lines else ""
    if first and os.path.exists(first):
        logger.debug(f"Found {cli_name} in PATH: {first}")
        return first
    return None


def find_in_common_paths(paths: list[str]) -> str | None:
    for candidate in paths:
        expanded = expand_path(candidate)
        if os.path.exists(expanded):
            logger.debug(f"Found CLI at: {expanded}")
            return expanded
    return None


class BackendLocator:
    """Locates one backend CLI and memoizes the answer.

    Attributes:
        config: Launch configuration for the backend
        platform: Platform key used for strategy and path selection
    """

    def __init__(self, config: CliSpawnConfig, platform: str | None = None) -> None:
        self.config = config
        self.platform = platform or sys.platform
        self._result: DetectionResult | None = None
        self._lock = threading.Lock()

    @property
    def cli_name(self) -> str:
        return self.config.cli_name

    def _strategy(self) -> SpawnStrategy:
        if self.platform == "win32":
            return self.config.windows_strategy
        return self.config.native_strategy

    def locate(self) -> DetectionResult:
        """Run detection now, bypassing the memoized result."""
        config = self.config
        strategy = self._strategy()

        if strategy == SpawnStrategy.WSL:
            if wsl.is_wsl_available():
                found = wsl.find_cli_in_wsl(config.cli_name, distribution=config.wsl_distribution)
                if found:
                    logger.debug(
                        f"Using {config.cli_name} via WSL "
                        f"({found.distribution or 'default'}): {found.wsl_path}"
                    )
                    return DetectionResult(
                        cli_path="wsl.exe",
                        strategy=SpawnStrategy.WSL,
                        use_wsl=True,
                        wsl_cli_path=found.wsl_path,
                        wsl_distribution=found.distribution,
                    )
            logger.debug(f"{config.cli_name} not found (WSL not available or CLI not in WSL)")
            return DetectionResult(cli_path=None, strategy=SpawnStrategy.WSL)

        if strategy == SpawnStrategy.NPX:
            logger.debug(f"Using {config.cli_name} via npx (package: {config.npx_package})")
            return DetectionResult(
                cli_path="npx",
                strategy=SpawnStrategy.NPX,
                npx_package=config.npx_package,
            )

        found_path = find_in_path(config.cli_name, self.platform)
        if found_path is None:
            found_path = find_in_common_paths(config.common_paths.get(self.platform, []))

        if found_path is None:
            logger.debug(f"{config.cli_name} not found")
        return DetectionResult(cli_path=found_path, strategy=strategy)

    def detected(self) -> DetectionResult:
        """Memoized detection: the first call probes, later calls reuse it."""
        with self._lock:
            if self._result is None:
                self._result = self.locate()
            return self._result

    def reset(self) -> None:
        with self._lock:
            self._result = None

    def install_instructions(self) -> str:
        """Install guidance for the strategy this platform uses."""
        cli_name = self.config.cli_name
        strategy = self._strategy()
        if strategy == SpawnStrategy.WSL:
            return (
                f"{cli_name} requires WSL on Windows. "
                "Install WSL, then install it inside your WSL distribution."
            )
        if strategy == SpawnStrategy.NPX:
            return f"Install with: npm install -g {self.config.npx_package or cli_name}"
        return (
            f"{cli_name} is not installed. "
            "Check the documentation for installation instructions."
        )


def build_command(
    detection: DetectionResult,
    cli_args: list[str],
    cwd: str | None = None,
) -> tuple[str, list[str]]:
    """Turn a detection result into the concrete ``(command, args)`` pair.

    Raises:
        ValueError: If the CLI was not found.
    """
    if detection.cli_path is None:
        raise ValueError("Cannot build a command for a CLI that was not found")

    if detection.use_wsl and detection.wsl_cli_path:
        command, args = wsl.create_wsl_command(
            detection.wsl_cli_path,
            cli_args,
            distribution=detection.wsl_distribution,
            cwd=cwd,
        )
        logger.debug(f"WSL spawn: {command} {' '.join(args[:6])}...")
        return command, args

    if detection.strategy == SpawnStrategy.NPX:
        npx_args = [detection.npx_package] if detection.npx_package else []
        args = [*npx_args, *cli_args]
        logger.debug(f"NPX spawn: npx {' '.join(args[:6])}...")
        return "npx", args

    logger.debug(f"Direct spawn: {detection.cli_path} {' '.join(cli_args[:6])}...")
    return detection.cli_path, list(cli_args)


__all__ = [
    "SpawnStrategy",
    "CliSpawnConfig",
    "DetectionResult",
    "BackendLocator",
    "build_command",
    "expand_path",
    "find_in_path",
    "find_in_common_paths",
]
