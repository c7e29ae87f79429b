"""Windows Subsystem for Linux helpers.

Some backends ship only for Linux/macOS. On Windows they can still be run
through ``wsl.exe``; these helpers find them inside a WSL distribution and
build the bridged command line.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import PureWindowsPath

logger = logging.getLogger(__name__)

# Preferred distributions, searched first in this order
PRIORITY_DISTROS = ("Ubuntu", "Debian", "openSUSE", "Fedora", "Arch")

# Locations checked inside WSL when ``which`` finds nothing
WSL_COMMON_BIN_DIRS = ("$HOME/.local/bin", "/usr/local/bin", "/usr/bin")

_wsl_available: bool | None = None
_wsl_lock = threading.Lock()


@dataclass(frozen=True)
class WslCliResult:
    """A CLI found inside WSL.

    Attributes:
        wsl_path: Linux path to the CLI inside WSL
        distribution: Distribution it was found in (None = default distro)
    """

    wsl_path: str
    distribution: str | None = None


def get_wsl_exe_path() -> str:
    """Full path to wsl.exe, which may not be on PATH for child processes."""
    system_root = os.environ.get("SystemRoot") or os.environ.get("SYSTEMROOT") or "C:\\Windows"
    return str(PureWindowsPath(system_root) / "System32" / "wsl.exe")


def _run_wsl(args: list[str], timeout: float, encoding: str = "utf-8") -> str | None:
    """Run wsl.exe and return stripped stdout, or None on any failure."""
    try:
        result = subprocess.run(
            ["wsl.exe", *args],
            capture_output=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"wsl.exe {' '.join(args)} failed: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.decode(encoding, errors="replace").strip()


def is_wsl_available(timeout: float = 5.0) -> bool:
    """Check whether WSL can run commands. Always False off Windows.

    The answer is cached for the life of the process.
    """
    global _wsl_available

    if sys.platform != "win32":
        return False

    with _wsl_lock:
        if _wsl_available is not None:
            return _wsl_available

        available = _run_wsl(["echo", "ok"], timeout) is not None
        if not available:
            available = _run_wsl(["--status"], timeout) is not None
        _wsl_available = available
        logger.debug(f"WSL available: {available}")
        return available


def clear_wsl_cache() -> None:
    global _wsl_available
    with _wsl_lock:
        _wsl_available = None


def _parse_distribution_list(output: str) -> list[str]:
    lines = (line.replace("\0", "").strip() for line in output.splitlines())
    return [line for line in lines if line and "docker-desktop" not in line]


def get_wsl_distributions(timeout: float = 5.0) -> list[str]:
    """List installed distributions, excluding docker-desktop ones."""
    if not is_wsl_available(timeout):
        return []
    # ``wsl -l -q`` writes UTF-16LE on Windows
    output = _run_wsl(["-l", "-q"], timeout, encoding="utf-16-le")
    if output is None:
        return []
    distributions = _parse_distribution_list(output)
    logger.debug(f"Found WSL distributions: {', '.join(distributions)}")
    return distributions


def sort_distributions(distributions: list[str]) -> list[str]:
    """Order distributions by PRIORITY_DISTROS; unknown ones keep their order at the end."""

    def rank(name: str) -> int:
        lowered = name.lower()
        for index, preferred in enumerate(PRIORITY_DISTROS):
            if preferred.lower() in lowered:
                return index
        return len(PRIORITY_DISTROS)

    return sorted(distributions, key=rank)


def _wsl_prefix(distribution: str | None) -> list[str]:
    return ["-d", distribution] if distribution else []


def _search_in_distribution(
    cli_name: str, distribution: str | None, timeout: float
) -> WslCliResult | None:
    prefix = _wsl_prefix(distribution)
    label = distribution or "default"

    found = _run_wsl([*prefix, "which", cli_name], timeout)
    if found and "not found" not in found and found.startswith("/"):
        logger.debug(f"Found {cli_name} in WSL ({label}) via which: {found}")
        return WslCliResult(wsl_path=found, distribution=distribution)

    for base in WSL_COMMON_BIN_DIRS:
        candidate = f"{base}/{cli_name}"
        found = _run_wsl(
            [*prefix, "sh", "-c", f"test -x {candidate} && echo {candidate}"], timeout
        )
        if found and found.startswith("/"):
            logger.debug(f"Found {cli_name} in WSL ({label}) at {found}")
            return WslCliResult(wsl_path=found, distribution=distribution)

    return None


def find_cli_in_wsl(
    cli_name: str,
    distribution: str | None = None,
    timeout: float = 10.0,
) -> WslCliResult | None:
    """Find a CLI inside WSL.

    With an explicit distribution only that one is searched. Otherwise every
    installed distribution is tried in priority order, then the default one.

    Args:
        cli_name: Executable name, e.g. "cursor-agent"
        distribution: Restrict the search to this distribution
        timeout: Per-probe timeout in seconds

    Returns:
        The Linux path and distribution, or None if not found.
    """
    if not is_wsl_available():
        return None

    if distribution:
        return _search_in_distribution(cli_name, distribution, timeout)

    distributions = sort_distributions(get_wsl_distributions())
    logger.debug(f"Searching for {cli_name} in WSL distributions: {', '.join(distributions)}")

    for distro in distributions:
        result = _search_in_distribution(cli_name, distro, timeout)
        if result:
            return result

    result = _search_in_distribution(cli_name, None, timeout)
    if result is None:
        logger.debug(f"{cli_name} not found in any WSL distribution")
    return result


def exec_in_wsl(
    args: list[str], distribution: str | None = None, timeout: float = 30.0
) -> str | None:
    """Run a command inside WSL; returns stripped stdout or None on failure."""
    if not is_wsl_available():
        return None
    return _run_wsl([*_wsl_prefix(distribution), *args], timeout)


def create_wsl_command(
    wsl_cli_path: str,
    args: list[str],
    distribution: str | None = None,
    cwd: str | None = None,
) -> tuple[str, list[str]]:
    """Build the ``(command, args)`` pair that runs a WSL CLI from Windows.

    Produces ``wsl.exe [-d distro] [--cd <wsl cwd>] <cli> args...``.
    """
    wsl_args = _wsl_prefix(distribution)
    if cwd:
        wsl_args += ["--cd", windows_to_wsl_path(cwd)]
    return get_wsl_exe_path(), [*wsl_args, wsl_cli_path, *args]


_DRIVE_PATH = re.compile(r"^([A-Za-z]):\\(.*)$")
_MNT_PATH = re.compile(r"^/mnt/([a-z])/(.*)$")


def windows_to_wsl_path(windows_path: str) -> str:
    """Convert ``C:\\Users\\foo`` to ``/mnt/c/Users/foo``.

    UNC paths are returned unchanged; other paths get forward slashes.
    """
    if windows_path.startswith("\\\\"):
        return windows_path

    match = _DRIVE_PATH.match(windows_path)
    if match:
        drive, rest = match.groups()
        rest = rest.replace("\\", "/")
        return f"/mnt/{drive.lower()}/{rest}"

    return windows_path.replace("\\", "/")


def wsl_to_windows_path(wsl_path: str) -> str:
    """Convert ``/mnt/c/Users/foo`` to ``C:\\Users\\foo``; other paths unchanged."""
    match = _MNT_PATH.match(wsl_path)
    if match:
        drive, rest = match.groups()
        rest = rest.replace("/", "\\")
        return f"{drive.upper()}:\\{rest}"
    return wsl_path


__all__ = [
    "WslCliResult",
    "PRIORITY_DISTROS",
    "is_wsl_available",
    "clear_wsl_cache",
    "get_wsl_distributions",
    "sort_distributions",
    "find_cli_in_wsl",
    "exec_in_wsl",
    "create_wsl_command",
    "get_wsl_exe_path",
    "windows_to_wsl_path",
    "wsl_to_windows_path",
]
