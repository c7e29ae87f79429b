"""Platform layer: process streaming, cancellation and CLI location."""

from conduit.platform.cancellation import CancellationToken, ExecutionCancelled
from conduit.platform.locator import (
    BackendLocator,
    CliSpawnConfig,
    DetectionResult,
    SpawnStrategy,
    build_command,
)
from conduit.platform.subprocess import (
    ProcessResult,
    SubprocessOptions,
    run_process,
    spawn_jsonl_process,
)

__all__ = [
    "CancellationToken",
    "ExecutionCancelled",
    "BackendLocator",
    "CliSpawnConfig",
    "DetectionResult",
    "SpawnStrategy",
    "build_command",
    "ProcessResult",
    "SubprocessOptions",
    "run_process",
    "spawn_jsonl_process",
]
