"""Line-oriented streaming subprocess engine.

Spawns an external process and exposes its stdout as a lazy sequence of
parsed JSON records. Stderr is collected separately and only surfaces when
the process exits non-zero. Knows nothing about any specific backend.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from conduit.platform.cancellation import CancellationToken
from conduit.utils.logging import log_command

logger = logging.getLogger(__name__)

# Longest slice of an unparseable line echoed back in the error record
MAX_LINE_EXCERPT = 500

# Grace period between SIGTERM and SIGKILL
TERMINATE_GRACE_SECONDS = 5.0

# Error records produced by the engine itself carry this key so providers
# can tell them apart from backend-native error events
ENGINE_ERROR_KEY = "engine_error"
MALFORMED_OUTPUT = "malformed_output"
IDLE_TIMEOUT = "idle_timeout"
PROCESS_EXIT = "process_exit"


@dataclass
class SubprocessOptions:
    """Everything needed to launch one backend process.

    Attributes:
        command: Executable to run
        args: Arguments passed after the executable
        cwd: Working directory for the child
        env: Complete environment for the child (not merged with os.environ)
        stdin_data: Text written to the child's stdin, then the pipe is closed
        cancellation: Token that tears the process down when cancelled
        idle_timeout: Seconds without a stdout line before the child is killed
    """

    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None
    stdin_data: str | None = None
    cancellation: CancellationToken | None = None
    idle_timeout: float | None = None


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int


class _Teardown:
    """Single teardown path for one child process.

    Whichever of cancellation, idle timeout or early generator close asks
    first wins; the process receives at most one termination signal.
    """

    def __init__(self, process: subprocess.Popen[str], command: str) -> None:
        self._process = process
        self._command = command
        self._lock = threading.Lock()
        self.reason: str | None = None

    @property
    def triggered(self) -> bool:
        return self.reason is not None

    def run(self, reason: str) -> bool:
        with self._lock:
            if self.reason is not None:
                return False
            self.reason = reason

        if self._process.poll() is None:
            logger.debug(
                "Terminating backend process",
                extra={"reason": reason, "cmd": self._command, "pid": self._process.pid},
            )
            try:
                self._process.terminate()
            except OSError as e:
                logger.debug(f"terminate() failed: {e}")
                return True
            threading.Thread(target=self._escalate, daemon=True).start()
        return True

    def _escalate(self) -> None:
        try:
            self._process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Process did not terminate, sending SIGKILL")
            self._process.kill()
            self._process.wait()


def _parse_line(line: str) -> Any:
    try:
        return json.loads(line)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Malformed output line", extra={"excerpt": line[:MAX_LINE_EXCERPT]})
        return {
            "type": "error",
            "error": f"Failed to parse output: {line[:MAX_LINE_EXCERPT]}",
            ENGINE_ERROR_KEY: MALFORMED_OUTPUT,
        }


def _write_stdin(process: subprocess.Popen[str], data: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(data)
        stdin.flush()
    except (BrokenPipeError, OSError) as e:
        # The child may exit before reading all of its input
        logger.debug(f"Could not write stdin: {e}")
    finally:
        try:
            stdin.close()
        except OSError:
            pass


def _drain_stderr(process: subprocess.Popen[str], sink: list[str]) -> None:
    if process.stderr is None:
        return
    for chunk in process.stderr:
        sink.append(chunk)


def spawn_jsonl_process(options: SubprocessOptions) -> Iterator[Any]:
    """Spawn a process and yield one parsed record per stdout line.

    - Blank lines are skipped; a line that is not JSON yields
      ``{"type": "error", "error": "Failed to parse output: ..."}`` and
      processing continues.
    - Stderr is collected and logged; on non-zero exit exactly one terminal
      ``{"type": "error", "error": ...}`` record is yielded carrying the
      stderr text or ``"Process exited with code N"``.
    - Cancellation terminates the process and ends the sequence with no
      further records.
    - Spawn failures (missing executable, permissions) propagate as
      exceptions from the first ``next()``.

    Error records produced here (rather than by the backend) carry an
    ``ENGINE_ERROR_KEY`` entry naming their cause; the exit record also
    carries ``exit_code``.

    Args:
        options: Process launch options

    Yields:
        Parsed records in the order the process wrote them.
    """
    token = options.cancellation
    if token is not None and token.cancelled:
        logger.debug("Cancelled before spawn", extra={"cmd": options.command})
        return

    process = subprocess.Popen(
        [options.command, *options.args],
        cwd=options.cwd,
        env=options.env,
        stdin=subprocess.PIPE if options.stdin_data is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,  # Line-buffered
    )

    teardown = _Teardown(process, options.command)
    stderr_chunks: list[str] = []
    stderr_thread = threading.Thread(
        target=_drain_stderr, args=(process, stderr_chunks), daemon=True
    )
    stderr_thread.start()

    if options.stdin_data is not None:
        threading.Thread(
            target=_write_stdin, args=(process, options.stdin_data), daemon=True
        ).start()

    unregister = (
        token.add_callback(lambda: teardown.run("cancelled")) if token is not None else None
    )

    last_activity = time.monotonic()
    stop_watchdog_event = threading.Event()

    def watchdog(idle_timeout: float) -> None:
        while not stop_watchdog_event.wait(timeout=min(idle_timeout, 1.0)):
            if time.monotonic() - last_activity >= idle_timeout:
                logger.warning(
                    "Backend produced no output, terminating",
                    extra={"idle_timeout": idle_timeout, "cmd": options.command},
                )
                teardown.run("timeout")
                return

    watchdog_thread: threading.Thread | None = None
    if options.idle_timeout is not None and options.idle_timeout > 0:
        watchdog_thread = threading.Thread(
            target=watchdog, args=(options.idle_timeout,), daemon=True
        )
        watchdog_thread.start()

    try:
        if process.stdout:
            for raw_line in process.stdout:
                last_activity = time.monotonic()
                if teardown.triggered:
                    break
                line = raw_line.strip()
                if not line:
                    continue
                record = _parse_line(line)
                if teardown.triggered:
                    break
                yield record

        process.wait()
        stop_watchdog_event.set()
        stderr_thread.join(timeout=1)
        stderr_text = "".join(stderr_chunks)
        exit_code = process.returncode if process.returncode is not None else -1

        if stderr_text.strip():
            logger.warning(
                "Backend stderr output",
                extra={"cmd": options.command, "stderr": stderr_text.strip()[:2000]},
            )
        log_command(options.command, exit_code)

        if teardown.reason == "cancelled" or (token is not None and token.cancelled):
            logger.debug("Backend process cancelled", extra={"cmd": options.command})
            return
        if teardown.reason == "timeout":
            yield {
                "type": "error",
                "error": f"Process timed out: no output for {options.idle_timeout:g}s",
                ENGINE_ERROR_KEY: IDLE_TIMEOUT,
            }
            return
        if exit_code != 0:
            yield {
                "type": "error",
                "error": stderr_text.strip() or f"Process exited with code {exit_code}",
                ENGINE_ERROR_KEY: PROCESS_EXIT,
                "exit_code": exit_code,
            }
    finally:
        stop_watchdog_event.set()
        if unregister is not None:
            unregister()
        if process.poll() is None:
            teardown.run("closed")
        if process.stdout:
            process.stdout.close()
        if watchdog_thread is not None:
            watchdog_thread.join(timeout=1)


def run_process(options: SubprocessOptions, timeout: float | None = 30.0) -> ProcessResult:
    """Run a process to completion and collect its output.

    Used for short probes such as ``--version``.

    Raises:
        subprocess.TimeoutExpired: If the process outlives ``timeout``.
        OSError: If the process cannot be spawned.
    """
    if options.cancellation is not None:
        options.cancellation.raise_if_cancelled()

    result = subprocess.run(
        [options.command, *options.args],
        cwd=options.cwd,
        env=options.env,
        input=options.stdin_data,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
    )
    return ProcessResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)


__all__ = [
    "SubprocessOptions",
    "ProcessResult",
    "spawn_jsonl_process",
    "run_process",
    "MAX_LINE_EXCERPT",
    "ENGINE_ERROR_KEY",
    "MALFORMED_OUTPUT",
    "IDLE_TIMEOUT",
    "PROCESS_EXIT",
]
