"""Cursor Agent provider.

Drives ``cursor-agent -p --output-format stream-json``. Cursor has no
native Windows build, so on Windows it runs through WSL. Installs made by
the Cursor install script are also found in its versions directory when
the binary is not on PATH.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from conduit.integrations.backends.base import (
    BASE_ENV_VARS,
    CliProvider,
    EventNormalizer,
)
from conduit.integrations.backends.errors import CliErrorInfo, ErrorKind, classify_error
from conduit.integrations.backends.types import (
    AssistantMessage,
    ContentBlock,
    ErrorMessage,
    ExecutionRequest,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from conduit.platform.locator import BackendLocator, CliSpawnConfig, DetectionResult, SpawnStrategy
from conduit.platform.subprocess import SubprocessOptions
from conduit.platform.system_paths import (
    get_cursor_auth_indicators,
    get_cursor_cli_paths,
    get_cursor_versions_dir,
)

logger = logging.getLogger(__name__)

CURSOR_CLI_NAME = "cursor-agent"
CURSOR_MODEL_PREFIX = "cursor-"
CURSOR_API_KEY_ENV = "CURSOR_API_KEY"
CURSOR_INSTALL_COMMAND = "curl https://cursor.com/install -fsS | bash"
DEFAULT_MODEL = "auto"

# A final block this much longer than the accumulated text is treated as a recap
_RECAP_MIN_ACCUMULATED = 100
_RECAP_LENGTH_RATIO = 0.8
_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CursorToolHandler:
    """How one Cursor tool-call variant maps to the shared tool vocabulary.

    Attributes:
        name: Shared tool name
        map_input: Builds tool input from Cursor's ``args``
        format_result: Renders a successful result (gets ``result.success`` and ``args``)
        format_rejected: Renders a rejection reason
    """

    name: str
    map_input: Callable[[dict[str, Any]], dict[str, Any]]
    format_result: Callable[[dict[str, Any], dict[str, Any]], str] | None = None
    format_rejected: Callable[[str], str] | None = None


def _format_shell_result(result: dict[str, Any], _args: dict[str, Any]) -> str:
    content = f"Exit code: {result.get('exitCode')}"
    if result.get("stdout"):
        content += f"\n{result['stdout']}"
    if result.get("stderr"):
        content += f"\nStderr: {result['stderr']}"
    return content


def _format_semantic_search(result: dict[str, Any], _args: dict[str, Any]) -> str:
    count = len(result.get("codeResults") or [])
    if count:
        return f"Found {count} semantic search result(s)"
    return str(result.get("results") or "No results found")


CURSOR_TOOL_HANDLERS: dict[str, CursorToolHandler] = {
    "readToolCall": CursorToolHandler(
        name="Read",
        map_input=lambda args: {"file_path": args.get("path")},
        format_result=lambda result, _args: str(result.get("content", "")),
    ),
    "writeToolCall": CursorToolHandler(
        name="Write",
        map_input=lambda args: {"file_path": args.get("path"), "content": args.get("fileText")},
        format_result=lambda result, _args: (
            f"Wrote {result.get('linesCreated')} lines to {result.get('path')}"
        ),
    ),
    "editToolCall": CursorToolHandler(
        name="Edit",
        map_input=lambda args: {
            "file_path": args.get("path"),
            "old_string": args.get("oldText"),
            "new_string": args.get("newText"),
        },
        format_result=lambda _result, args: f"Edited file: {args.get('path')}",
    ),
    "shellToolCall": CursorToolHandler(
        name="Bash",
        map_input=lambda args: {"command": args.get("command")},
        format_result=_format_shell_result,
        format_rejected=lambda reason: f"Rejected: {reason}",
    ),
    "deleteToolCall": CursorToolHandler(
        name="Delete",
        map_input=lambda args: {"file_path": args.get("path")},
        format_result=lambda _result, args: f"Deleted: {args.get('path')}",
        format_rejected=lambda reason: f"Delete rejected: {reason}",
    ),
    "grepToolCall": CursorToolHandler(
        name="Grep",
        map_input=lambda args: {"pattern": args.get("pattern"), "path": args.get("path")},
        format_result=lambda result, _args: (
            f"Found {result.get('matchedLines')} matching lines"
        ),
    ),
    "lsToolCall": CursorToolHandler(
        name="Ls",
        map_input=lambda args: {"path": args.get("path")},
        format_result=lambda result, _args: (
            f"Found {result.get('childrenFiles')} files, "
            f"{result.get('childrenDirs')} directories"
        ),
    ),
    "globToolCall": CursorToolHandler(
        name="Glob",
        map_input=lambda args: {
            "pattern": args.get("globPattern"),
            "path": args.get("targetDirectory"),
        },
        format_result=lambda result, _args: f"Found {result.get('totalFiles')} matching files",
    ),
    "semSearchToolCall": CursorToolHandler(
        name="SemanticSearch",
        map_input=lambda args: {
            "query": args.get("query"),
            "targetDirectories": args.get("targetDirectories"),
            "explanation": args.get("explanation"),
        },
        format_result=_format_semantic_search,
    ),
    "readLintsToolCall": CursorToolHandler(
        name="ReadLints",
        map_input=lambda args: {"paths": args.get("paths")},
        format_result=lambda result, _args: (
            f"Found {result.get('totalDiagnostics')} diagnostic(s) "
            f"in {result.get('totalFiles')} file(s)"
        ),
    ),
}


def process_cursor_tool_call(tool_call: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    """Resolve a Cursor ``tool_call`` payload to ``(tool name, input)``.

    Returns None for unknown shapes and for partial events whose ``args``
    have not arrived yet.
    """
    for key, handler in CURSOR_TOOL_HANDLERS.items():
        data = tool_call.get(key)
        if isinstance(data, dict):
            args = data.get("args")
            if not isinstance(args, dict):
                return None
            return handler.name, handler.map_input(args)

    function = tool_call.get("function")
    if isinstance(function, dict) and function.get("name"):
        raw_arguments = function.get("arguments") or "{}"
        try:
            tool_input = json.loads(raw_arguments)
        except (json.JSONDecodeError, TypeError):
            tool_input = {"raw": raw_arguments}
        if not isinstance(tool_input, dict):
            tool_input = {"value": tool_input}
        return str(function["name"]), tool_input

    return None


def format_cursor_tool_result(tool_call: dict[str, Any]) -> str:
    for key, handler in CURSOR_TOOL_HANDLERS.items():
        data = tool_call.get(key)
        if not isinstance(data, dict) or not isinstance(data.get("result"), dict):
            continue
        result = data["result"]
        args = data.get("args") if isinstance(data.get("args"), dict) else {}
        success = result.get("success")
        if isinstance(success, dict) and handler.format_result is not None:
            return handler.format_result(success, args)
        rejected = result.get("rejected")
        if isinstance(rejected, dict) and handler.format_rejected is not None:
            return handler.format_rejected(str(rejected.get("reason", "")))
    return ""


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class CursorNormalizer(EventNormalizer):
    """Maps Cursor stream-json events onto ProviderMessage values.

    Cursor repeats text: the same chunk twice in a row, and a final block
    holding everything said so far. Both are filtered out here.
    """

    def __init__(
        self,
        session_id: str | None = None,
        map_error: Callable[[str, int | None], CliErrorInfo] | None = None,
    ) -> None:
        super().__init__(CURSOR_CLI_NAME, session_id, map_error)
        self._last_text = ""
        self._accumulated = ""

    def decode(self, record: dict[str, Any]) -> list[ProviderMessage]:
        event_type = record.get("type")
        session_id = record.get("session_id")
        if event_type == "system" and record.get("subtype") == "init" and session_id:
            self.session_id = str(session_id)
            logger.debug("Cursor session started", extra={"session_id": self.session_id})
            return []

        if event_type == "assistant":
            return self._assistant(record)
        if event_type == "tool_call":
            return self._tool_call(record)
        if event_type == "result":
            return self._result(record)
        return []

    def _session(self, record: dict[str, Any]) -> str | None:
        return record.get("session_id") or self.session_id

    def _assistant(self, record: dict[str, Any]) -> list[ProviderMessage]:
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []
        blocks = self.deduplicate(
            [TextBlock(str(c["text"])) for c in content if isinstance(c, dict) and c.get("text")]
        )
        if not blocks:
            return []
        return [AssistantMessage(content=tuple(blocks), session_id=self._session(record))]

    def deduplicate(self, blocks: list[TextBlock]) -> list[ContentBlock]:
        kept: list[ContentBlock] = []
        for block in blocks:
            text = block.text
            if not text.strip() or text == self._last_text:
                continue
            if self._is_recap(text):
                continue
            self._last_text = text
            self._accumulated += text
            kept.append(block)
        return kept

    def _is_recap(self, text: str) -> bool:
        accumulated = self._accumulated
        if len(accumulated) <= _RECAP_MIN_ACCUMULATED:
            return False
        if len(text) <= len(accumulated) * _RECAP_LENGTH_RATIO:
            return False
        head = _WHITESPACE_RE.sub(" ", accumulated).strip()[:_RECAP_MIN_ACCUMULATED]
        return head in _WHITESPACE_RE.sub(" ", text).strip()

    def _tool_call(self, record: dict[str, Any]) -> list[ProviderMessage]:
        tool_call = record.get("tool_call")
        if not isinstance(tool_call, dict):
            return []
        processed = process_cursor_tool_call(tool_call)
        if processed is None:
            logger.warning(
                "Unhandled Cursor tool call",
                extra={"keys": sorted(tool_call), "tool_call": json.dumps(tool_call)[:500]},
            )
            return []

        name, tool_input = processed
        call_id = record.get("call_id")
        tool_use = ToolUseBlock(name=name, input=tool_input, tool_use_id=call_id)
        subtype = record.get("subtype")
        if subtype == "started":
            content: tuple[ContentBlock, ...] = (tool_use,)
        elif subtype == "completed":
            result = ToolResultBlock(
                content=format_cursor_tool_result(tool_call), tool_use_id=call_id
            )
            content = (tool_use, result)
        else:
            return []
        return [AssistantMessage(content=content, session_id=self._session(record))]

    def _result(self, record: dict[str, Any]) -> list[ProviderMessage]:
        session_id = self._session(record)
        if record.get("is_error"):
            text = str(record.get("error") or record.get("result") or "Unknown error")
            if self._map_error is not None:
                info = self._map_error(text, None)
            else:
                info = classify_error(text, cli_name=CURSOR_CLI_NAME)
            return [
                ErrorMessage(
                    error=text,
                    suggestion=info.suggestion,
                    kind=info.kind.value,
                    session_id=session_id,
                )
            ]
        result = record.get("result")
        return [
            ResultMessage(
                subtype="success",
                result=result if isinstance(result, str) else None,
                session_id=session_id,
            )
        ]


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class CursorLocator(BackendLocator):
    """Adds the install script's versions directory to the standard search."""

    def locate(self) -> DetectionResult:
        result = super().locate()
        if result.installed or self.platform == "win32":
            return result

        versions_dir = get_cursor_versions_dir()
        try:
            versions = sorted(
                (v.name for v in versions_dir.iterdir() if not v.name.startswith(".")),
                reverse=True,
            )
        except OSError:
            return result

        for version in versions:
            candidate = versions_dir / version / CURSOR_CLI_NAME
            if candidate.exists():
                logger.debug(f"Found {CURSOR_CLI_NAME} version {version} at {candidate}")
                return DetectionResult(cli_path=str(candidate), strategy=SpawnStrategy.NATIVE)
        return result


CURSOR_MODEL_MAP: dict[str, tuple[str, str]] = {
    "auto": ("Auto (Recommended)", "Automatically selects the best model"),
    "composer-1": ("Composer 1", "Cursor Composer agent model"),
    "sonnet-4.5": ("Claude Sonnet 4.5", "Anthropic Claude Sonnet 4.5"),
    "sonnet-4.5-thinking": ("Claude Sonnet 4.5 (Thinking)", "Sonnet 4.5 with extended thinking"),
    "opus-4.5": ("Claude Opus 4.5", "Anthropic Claude Opus 4.5"),
    "opus-4.5-thinking": ("Claude Opus 4.5 (Thinking)", "Opus 4.5 with extended thinking"),
    "opus-4.1": ("Claude Opus 4.1", "Anthropic Claude Opus 4.1"),
    "gemini-3-pro": ("Gemini 3 Pro", "Google Gemini 3 Pro"),
    "gemini-3-flash": ("Gemini 3 Flash", "Google Gemini 3 Flash"),
    "gpt-5.2": ("GPT-5.2", "OpenAI GPT-5.2 via Cursor"),
    "gpt-5.1": ("GPT-5.1", "OpenAI GPT-5.1 via Cursor"),
    "gpt-5.2-high": ("GPT-5.2 High", "GPT-5.2 with high reasoning effort"),
    "gpt-5.1-high": ("GPT-5.1 High", "GPT-5.1 with high reasoning effort"),
    "gpt-5.1-codex": ("GPT-5.1 Codex", "OpenAI GPT-5.1 Codex for code generation"),
    "gpt-5.1-codex-high": ("GPT-5.1 Codex High", "GPT-5.1 Codex with high reasoning effort"),
    "gpt-5.1-codex-max": ("GPT-5.1 Codex Max", "GPT-5.1 Codex Max for long tasks"),
    "gpt-5.1-codex-max-high": ("GPT-5.1 Codex Max High", "Codex Max with high reasoning effort"),
    "grok": ("Grok", "xAI Grok"),
}


def strip_cursor_prefix(model: str) -> str:
    if model.lower().startswith(CURSOR_MODEL_PREFIX):
        return model[len(CURSOR_MODEL_PREFIX) :]
    return model


class CursorProvider(CliProvider):
    env_allowlist = (CURSOR_API_KEY_ENV, *BASE_ENV_VARS)
    locator_class = CursorLocator

    @property
    def name(self) -> str:
        return "cursor"

    def get_spawn_config(self) -> CliSpawnConfig:
        return CliSpawnConfig(
            cli_name=CURSOR_CLI_NAME,
            windows_strategy=SpawnStrategy.WSL,
            common_paths={sys.platform: get_cursor_cli_paths()},
        )

    def get_install_instructions(self) -> str:
        if self.locator.platform == "win32":
            return (
                f"{CURSOR_CLI_NAME} requires WSL on Windows. "
                f"Install WSL, then run in WSL: {CURSOR_INSTALL_COMMAND}"
            )
        return f"Install with: {CURSOR_INSTALL_COMMAND}"

    def build_cli_args(self, request: ExecutionRequest) -> list[str]:
        model = strip_cursor_prefix(request.model or DEFAULT_MODEL)
        args = ["-p", "--output-format", "stream-json", "--stream-partial-output"]
        # Without --force Cursor only suggests edits
        if not request.read_only:
            args.append("--force")
        if model != DEFAULT_MODEL:
            args.extend(["--model", model])
        args.append("-")
        return args

    def build_subprocess_options(
        self, request: ExecutionRequest, cli_args: list[str]
    ) -> SubprocessOptions:
        if request.has_mcp_servers:
            logger.warning(
                "MCP servers are not supported by Cursor and will be ignored",
                extra={"count": len(request.mcp_servers or {})},
            )
        return super().build_subprocess_options(request, cli_args)

    def create_normalizer(self, request: ExecutionRequest) -> CursorNormalizer:
        return CursorNormalizer(session_id=request.session_id, map_error=self.map_error)

    def map_error(self, stderr: str, exit_code: int | None) -> CliErrorInfo:
        lower = stderr.lower()
        if "model not available" in lower or "invalid model" in lower or "unknown model" in lower:
            return CliErrorInfo(
                kind=ErrorKind.MODEL_UNAVAILABLE,
                message="Requested model is not available",
                recoverable=True,
                suggestion='Try using "auto" mode or select a different model',
            )
        info = classify_error(stderr, exit_code, cli_name=CURSOR_CLI_NAME)
        if info.kind == ErrorKind.NOT_AUTHENTICATED:
            return CliErrorInfo(
                kind=info.kind,
                message="Cursor CLI is not authenticated",
                recoverable=True,
                suggestion=f'Run "{CURSOR_CLI_NAME} login" to authenticate with your browser',
            )
        if info.kind == ErrorKind.RATE_LIMITED:
            return CliErrorInfo(
                kind=info.kind,
                message="Cursor API rate limit exceeded",
                recoverable=True,
                suggestion="Wait a few minutes and try again, or upgrade to Cursor Pro",
            )
        if info.kind == ErrorKind.PROCESS_CRASHED:
            return CliErrorInfo(
                kind=info.kind,
                message="Cursor agent process was terminated",
                recoverable=True,
                suggestion=info.suggestion,
            )
        if info.kind == ErrorKind.UNKNOWN_ERROR:
            return CliErrorInfo(
                kind=info.kind,
                message=stderr or f"Cursor agent exited with code {exit_code}",
                recoverable=False,
            )
        return info

    def has_api_key(self) -> bool:
        return bool(self.config.api_key or os.environ.get(CURSOR_API_KEY_ENV))

    def is_authenticated(self) -> bool:
        return self.has_api_key() or get_cursor_auth_indicators().authenticated

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        if self.config.api_key:
            env[CURSOR_API_KEY_ENV] = self.config.api_key
        return env

    def supports_feature(self, feature: str) -> bool:
        return feature in ("tools", "text", "streaming")

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=f"{CURSOR_MODEL_PREFIX}{model_id}",
                name=label,
                model_string=model_id,
                provider=self.name,
                description=description,
                supports_tools=True,
                supports_vision=False,
                default=model_id == DEFAULT_MODEL,
            )
            for model_id, (label, description) in CURSOR_MODEL_MAP.items()
        ]


__all__ = [
    "CursorProvider",
    "CursorNormalizer",
    "CursorLocator",
    "CursorToolHandler",
    "CURSOR_TOOL_HANDLERS",
    "CURSOR_MODEL_MAP",
    "process_cursor_tool_call",
    "format_cursor_tool_result",
    "strip_cursor_prefix",
]
