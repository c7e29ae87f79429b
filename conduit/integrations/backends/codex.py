"""Codex provider.

Runs ``codex exec --json`` and translates its JSONL events into the shared
message protocol. Requests that ask for no tools and no MCP servers can
skip the CLI entirely and go through the Responses API when an
``OPENAI_API_KEY`` is available (see ``codex_sdk``).

Per-invocation artifacts (output schema, decoded images) are written under
``<cwd>/.codex/`` before the CLI is spawned and are left in place.
"""

from __future__ import annotations

import base64
import json
import logging
import math
import os
import re
import sys
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal

from conduit.config.manager import get_global_settings
from conduit.config.settings import CODEX_APPROVAL_POLICIES, CODEX_SANDBOX_MODES
from conduit.integrations.backends.base import (
    BASE_ENV_VARS,
    CliProvider,
    EventNormalizer,
    ToolUseTracker,
    parse_frontmatter,
    resolve_max_turns,
    resolve_system_prompt,
)
from conduit.integrations.backends.codex_sdk import execute_sdk_query
from conduit.integrations.backends.codex_tools import (
    TODO_TOOL_NAME,
    extract_codex_todo_items,
    resolve_codex_tool_call,
)
from conduit.integrations.backends.errors import (
    BackendNotAuthenticatedError,
    BackendNotInstalledError,
    CliErrorInfo,
    ErrorKind,
    classify_error,
    matches_common_rate_limit,
)
from conduit.integrations.backends.types import (
    AssistantMessage,
    ErrorMessage,
    ExecutionRequest,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    ToolUseBlock,
    extract_image_blocks,
    extract_text,
    format_history_as_text,
    text_message,
    thinking_message,
    tool_result_message,
    tool_use_message,
)
from conduit.platform.locator import CliSpawnConfig, DetectionResult
from conduit.platform.system_paths import (
    get_codex_auth_indicators,
    get_codex_cli_paths,
    get_codex_config_dir,
)

logger = logging.getLogger(__name__)

CODEX_CLI_NAME = "codex"
CODEX_NPM_PACKAGE = "@openai/codex"
CODEX_MODEL_PREFIX = "codex-"
OPENAI_API_KEY_ENV = "OPENAI_API_KEY"

# CLI flags
CODEX_EXEC_SUBCOMMAND = "exec"
CODEX_JSON_FLAG = "--json"
CODEX_MODEL_FLAG = "--model"
CODEX_SANDBOX_FLAG = "--sandbox"
CODEX_APPROVAL_FLAG = "--ask-for-approval"
CODEX_SEARCH_FLAG = "--search"
CODEX_OUTPUT_SCHEMA_FLAG = "--output-schema"
CODEX_CONFIG_FLAG = "--config"
CODEX_IMAGE_FLAG = "--image"
CODEX_ADD_DIR_FLAG = "--add-dir"
CODEX_STDIN_MARKER = "-"

CONFIG_KEY_MAX_TURNS = "max_turns"
CONFIG_KEY_REASONING_EFFORT = "reasoning_effort"
CONFIG_KEY_MCP_SERVERS = "mcp_servers"

ERROR_CODEX_CLI_REQUIRED = (
    "Codex CLI is required for tool-enabled requests. "
    "Please install Codex CLI and run `codex login`."
)
ERROR_CODEX_AUTH_REQUIRED = "Codex authentication is required. Please run 'codex login'."
ERROR_CODEX_SDK_AUTH_REQUIRED = "OpenAI API key required for Codex SDK execution."
ERROR_OUTPUT_SCHEMA_NOT_OBJECT = "Codex output schema must be a JSON object."
DEFAULT_CLI_ERROR = "Codex CLI error"

RATE_LIMIT_TIP = (
    "Tip: You're being rate limited. Try reducing concurrent tasks "
    "or waiting a few minutes before retrying."
)
AUTH_TIP = (
    "Tip: Check that your OPENAI_API_KEY is set correctly "
    "or run 'codex auth login' to authenticate."
)
NOT_FOUND_TIP = (
    "Tip: Make sure the Codex CLI is installed. "
    "Run 'npm install -g @openai/codex-cli' to install."
)
EXCEPTION_RATE_LIMIT_TIP = (
    "Tip: If you're rate limited, try reducing concurrent tasks or waiting a few minutes."
)

# Event and item types
EVENT_ITEM_STARTED = "item.started"
EVENT_ITEM_UPDATED = "item.updated"
EVENT_ITEM_COMPLETED = "item.completed"
EVENT_THREAD_STARTED = "thread.started"
EVENT_THREAD_COMPLETED = "thread.completed"
EVENT_TURN_STARTED = "turn.started"
EVENT_TURN_COMPLETED = "turn.completed"
EVENT_TURN_FAILED = "turn.failed"
EVENT_ERROR = "error"

ITEM_REASONING = "reasoning"
ITEM_AGENT_MESSAGE = "agent_message"
ITEM_COMMAND_EXECUTION = "command_execution"
ITEM_TODO_LIST = "todo_list"
ITEM_FILE_CHANGE = "file_change"
ITEM_WEB_SEARCH = "web_search"
ITEM_MCP_TOOL_CALL = "mcp_tool_call"

TOOL_USE_ID_PREFIX = "codex-tool-"
ITEM_ID_KEYS = ("id", "item_id", "call_id", "tool_use_id", "command_id")
EVENT_ID_KEYS = ("id", "event_id", "request_id")
COMMAND_OUTPUT_FIELDS = ("aggregated_output", "output", "stdout", "stderr", "result")

# Prompt assembly
SYSTEM_PROMPT_LABEL = "System instructions"
CURRENT_REQUEST_HEADER = "Current request:\n"
SYSTEM_PROMPT_SEPARATOR = "\n\n"
CONSTRAINTS_SECTION_TITLE = "Codex Execution Constraints"
CONSTRAINTS_NO_TOOLS_VALUE = "none"
CONSTRAINTS_OUTPUT_SCHEMA_VALUE = "Respond with JSON that matches the provided schema."

# AGENTS.md auto-loading
CODEX_INSTRUCTIONS_DIR = ".codex"
CODEX_INSTRUCTIONS_FILE = "AGENTS.md"
CODEX_INSTRUCTIONS_SECTION = "Codex Project Instructions"
USER_INSTRUCTIONS_LABEL = "User instructions"
PROJECT_INSTRUCTIONS_LABEL = "Project instructions"

# Request-scoped files
OUTPUT_SCHEMA_FILENAME = "output-schema.json"
IMAGE_TEMP_DIR = ".codex-images"
IMAGE_FILE_PREFIX = "image-"
_IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}

DEFAULT_ALLOWED_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep", "Bash", "WebSearch", "WebFetch")
SEARCH_TOOL_NAMES = frozenset({"WebSearch", "WebFetch"})

_BARE_CONFIG_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CodexModel:
    name: str
    description: str
    tier: str
    has_reasoning: bool = True
    context_window: int = 256_000
    max_output_tokens: int = 32_000
    default: bool = False


CODEX_MODEL_MAP: dict[str, CodexModel] = {
    "gpt-5.1-codex-max": CodexModel(
        name="GPT-5.1 Codex Max",
        description="Flagship agentic coding model for long-running tasks",
        tier="premium",
        default=True,
    ),
    "gpt-5.1-codex": CodexModel(
        name="GPT-5.1 Codex",
        description="Agentic coding model",
        tier="standard",
    ),
    "gpt-5.1-codex-mini": CodexModel(
        name="GPT-5.1 Codex Mini",
        description="Faster, cheaper coding model",
        tier="basic",
        max_output_tokens=16_000,
    ),
    "gpt-5.2": CodexModel(
        name="GPT-5.2",
        description="General-purpose reasoning model",
        tier="premium",
    ),
    "gpt-5.1": CodexModel(
        name="GPT-5.1",
        description="General-purpose reasoning model",
        tier="standard",
    ),
    "gpt-4.1": CodexModel(
        name="GPT-4.1",
        description="Non-reasoning model for quick edits",
        tier="basic",
        has_reasoning=False,
        max_output_tokens=16_000,
    ),
}


def resolve_model_string(model: str) -> str:
    """Strip the ``codex-`` routing prefix from a model id."""
    if model.lower().startswith(CODEX_MODEL_PREFIX):
        return model[len(CODEX_MODEL_PREFIX) :]
    return model


def supports_reasoning_effort(model: str) -> bool:
    entry = CODEX_MODEL_MAP.get(resolve_model_string(model).lower())
    return entry is not None and entry.has_reasoning


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CodexSettings:
    """Effective Codex execution policy for one request.

    Global settings provide the defaults; the request's ``settings`` bag
    overrides them key by key.
    """

    sandbox_mode: str = "workspace-write"
    approval_policy: str = "on-request"
    enable_web_search: bool = False
    enable_images: bool = True
    additional_dirs: tuple[str, ...] = ()
    auto_load_agents: bool = False
    default_max_turns: int = 0


def _choice(value: Any, allowed: tuple[str, ...], fallback: str, key: str) -> str:
    if value is None:
        return fallback
    if isinstance(value, str) and value in allowed:
        return value
    logger.warning(
        "Ignoring invalid Codex setting",
        extra={"key": key, "value": value, "allowed": allowed},
    )
    return fallback


def _dirs(value: Any, fallback: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return fallback
    if isinstance(value, str):
        return tuple(d.strip() for d in value.split(",") if d.strip())
    return tuple(str(d) for d in value if str(d).strip())


def resolve_codex_settings(
    overrides: Mapping[str, Any] | None = None, *, read_only: bool = False
) -> CodexSettings:
    """Merge global settings with per-request overrides.

    ``read_only`` forces the ``read-only`` sandbox regardless of either.
    """
    settings = get_global_settings()
    overrides = overrides or {}

    sandbox_default = _choice(
        settings.codex_sandbox_mode, CODEX_SANDBOX_MODES, "workspace-write", "CODEX_SANDBOX_MODE"
    )
    approval_default = _choice(
        settings.codex_approval_policy,
        CODEX_APPROVAL_POLICIES,
        "on-request",
        "CODEX_APPROVAL_POLICY",
    )
    sandbox_mode = _choice(
        overrides.get("sandbox_mode"), CODEX_SANDBOX_MODES, sandbox_default, "sandbox_mode"
    )

    return CodexSettings(
        sandbox_mode="read-only" if read_only else sandbox_mode,
        approval_policy=_choice(
            overrides.get("approval_policy"),
            CODEX_APPROVAL_POLICIES,
            approval_default,
            "approval_policy",
        ),
        enable_web_search=bool(
            overrides.get("enable_web_search", settings.codex_enable_web_search)
        ),
        enable_images=bool(overrides.get("enable_images", settings.codex_enable_images)),
        additional_dirs=_dirs(
            overrides.get("additional_dirs"), tuple(settings.get_codex_additional_dirs())
        ),
        auto_load_agents=bool(overrides.get("auto_load_agents", settings.codex_auto_load_agents)),
        default_max_turns=settings.default_max_turns,
    )


# ---------------------------------------------------------------------------
# Record field helpers
# ---------------------------------------------------------------------------


def get_event_type(record: Mapping[str, Any]) -> str | None:
    for key in ("type", "event"):
        value = record.get(key)
        if isinstance(value, str):
            return value
    return None


def extract_item_type(item: Mapping[str, Any]) -> str | None:
    for key in ("type", "kind"):
        value = item.get(key)
        if isinstance(value, str):
            return value
    return None


def extract_codex_text(value: Any) -> str | None:
    """Best-effort free text from a string, a list, or a text-bearing object."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [extract_codex_text(entry) for entry in value]
        joined = "\n".join(part for part in parts if part)
        return joined or None
    if isinstance(value, Mapping):
        for key in ("text", "content", "message"):
            if isinstance(value.get(key), str):
                return value[key]
    return None


def extract_command_text(item: Mapping[str, Any]) -> str | None:
    for key in ("command", "input", "content"):
        if item.get(key) is not None:
            return extract_codex_text(item[key]) or None
    return None


def extract_command_output(item: Mapping[str, Any]) -> str | None:
    """Join command output fields, dropping duplicates reported under several keys."""
    outputs: list[str] = []
    for key in COMMAND_OUTPUT_FIELDS:
        text = extract_codex_text(item.get(key))
        if text and text not in outputs:
            outputs.append(text)
    return "\n".join(outputs) or None


def normalize_identifier(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return str(value)
    return None


def get_item_identifier(record: Mapping[str, Any], item: Mapping[str, Any]) -> str | None:
    for source, keys in ((item, ITEM_ID_KEYS), (record, EVENT_ID_KEYS)):
        for key in keys:
            identifier = normalize_identifier(source.get(key))
            if identifier:
                return identifier
    return None


def with_error_tip(text: str) -> str:
    """Append a remediation tip to a Codex error when one applies."""
    lower = text.lower()
    if "rate limit" in lower:
        return f"{text}\n\n{RATE_LIMIT_TIP}"
    if "authentication" in lower or "unauthorized" in lower:
        return f"{text}\n\n{AUTH_TIP}"
    if "not found" in lower:
        return f"{text}\n\n{NOT_FOUND_TIP}"
    return text


def looks_like_rate_limit(output: str) -> bool:
    """Rate-limit heuristic with OpenAI-specific overload markers."""
    return matches_common_rate_limit(
        output, extra_keywords=("overloaded", "capacity", "server_error")
    )


# ---------------------------------------------------------------------------
# Argument and prompt building
# ---------------------------------------------------------------------------


def _toml_key(key: str) -> str:
    return key if _BARE_CONFIG_KEY_RE.match(key) else json.dumps(key)


def format_config_value(value: Any) -> str:
    """Render a ``--config`` value in the TOML syntax Codex parses."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, Mapping):
        entries = ", ".join(
            f"{_toml_key(str(k))} = {format_config_value(v)}" for k, v in value.items()
        )
        return f"{{{entries}}}"
    if isinstance(value, Sequence):
        return "[" + ", ".join(format_config_value(v) for v in value) + "]"
    return json.dumps(str(value))


def build_config_overrides(overrides: Sequence[tuple[str, Any]]) -> list[str]:
    args: list[str] = []
    for key, value in overrides:
        args.extend([CODEX_CONFIG_FLAG, f"{key}={format_config_value(value)}"])
    return args


def build_mcp_overrides(
    mcp_servers: Mapping[str, Mapping[str, Any]] | None,
) -> list[tuple[str, Any]]:
    """Encode MCP servers as ``mcp_servers.<name>.<field>`` overrides."""
    overrides: list[tuple[str, Any]] = []
    for name, server in (mcp_servers or {}).items():
        prefix = f"{CONFIG_KEY_MCP_SERVERS}.{_toml_key(name)}"
        for key, value in server.items():
            if value is None:
                continue
            overrides.append((f"{prefix}.{_toml_key(key)}", value))
    return overrides


def resolve_search_enabled(allowed_tools: Sequence[str], restrict_tools: bool) -> bool:
    tools = allowed_tools if restrict_tools else DEFAULT_ALLOWED_TOOLS
    return any(tool in SEARCH_TOOL_NAMES for tool in tools)


def resolve_tool_policy(request: ExecutionRequest) -> tuple[list[str], bool]:
    """Return the effective tool list and whether it is enforced.

    Requests with MCP servers are unrestricted unless they opt out
    explicitly with ``mcp_unrestricted_tools=False``.
    """
    allowed = (
        list(request.allowed_tools)
        if request.allowed_tools is not None
        else list(DEFAULT_ALLOWED_TOOLS)
    )
    restrict = not request.has_mcp_servers or request.mcp_unrestricted_tools is False
    return allowed, restrict


def wants_output_schema(request: ExecutionRequest) -> bool:
    return bool(request.output_format) and request.output_format.get("type") == "json_schema"


def build_constraints_prompt(
    *,
    max_turns: int | None,
    allowed_tools: Sequence[str],
    restrict_tools: bool,
    has_output_schema: bool,
    session_id: str | None,
) -> str | None:
    lines: list[str] = []
    if max_turns is not None:
        lines.append(f"Max turns: {max_turns}")
    if restrict_tools:
        allowed = ", ".join(allowed_tools) if allowed_tools else CONSTRAINTS_NO_TOOLS_VALUE
        lines.append(f"Allowed tools: {allowed}")
    if has_output_schema:
        lines.append(f"Output format: {CONSTRAINTS_OUTPUT_SCHEMA_VALUE}")
    if session_id:
        lines.append(f"Session ID: {session_id}")
    if not lines:
        return None
    body = "\n".join(f"- {line}" for line in lines)
    return f"## {CONSTRAINTS_SECTION_TITLE}\n{body}"


def build_combined_prompt(request: ExecutionRequest, system_prompt: str | None) -> str:
    """History, then system instructions, then the current request."""
    history = format_history_as_text(request.conversation_history)
    system_section = f"{SYSTEM_PROMPT_LABEL}:\n{system_prompt}\n\n" if system_prompt else ""
    return f"{history}{system_section}{CURRENT_REQUEST_HEADER}{extract_text(request.prompt)}"


def _read_instructions(path: Path) -> str | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return None
    _, body = parse_frontmatter(raw.strip())
    return body.strip() or None


def load_codex_instructions(cwd: str, enabled: bool) -> str | None:
    """Load ``~/.codex/AGENTS.md`` and ``<cwd>/.codex/AGENTS.md``.

    Files with identical content are included once.
    """
    if not enabled:
        return None

    candidates = [
        (get_codex_config_dir() / CODEX_INSTRUCTIONS_FILE, USER_INSTRUCTIONS_LABEL),
        (Path(cwd) / CODEX_INSTRUCTIONS_DIR / CODEX_INSTRUCTIONS_FILE, PROJECT_INSTRUCTIONS_LABEL),
    ]
    sections: list[str] = []
    seen: set[str] = set()
    for path, label in candidates:
        content = _read_instructions(path)
        if not content or content in seen:
            continue
        seen.add(content)
        sections.append(
            f"## {CODEX_INSTRUCTIONS_SECTION}\n"
            f"**Source:** {label}\n"
            f"**Path:** `{path}`\n\n"
            f"{content}"
        )
    return SYSTEM_PROMPT_SEPARATOR.join(sections) or None


def write_output_schema_file(cwd: str, output_format: Mapping[str, Any] | None) -> str | None:
    """Write the requested JSON schema to ``<cwd>/.codex/output-schema.json``.

    Raises:
        ValueError: If the schema is not a JSON object.
    """
    if not output_format or output_format.get("type") != "json_schema":
        return None
    schema = output_format.get("schema")
    if not isinstance(schema, Mapping):
        raise ValueError(ERROR_OUTPUT_SCHEMA_NOT_OBJECT)

    schema_dir = Path(cwd) / CODEX_INSTRUCTIONS_DIR
    schema_dir.mkdir(parents=True, exist_ok=True)
    schema_path = schema_dir / OUTPUT_SCHEMA_FILENAME
    schema_path.write_text(json.dumps(schema, indent=2), encoding="utf-8")
    return str(schema_path)


def write_image_files(cwd: str, image_blocks: Sequence[Mapping[str, Any]]) -> list[str]:
    """Decode base64 image blocks into ``<cwd>/.codex/.codex-images/``."""
    blocks = [
        block
        for block in image_blocks
        if isinstance(block.get("source"), Mapping) and block["source"].get("data")
    ]
    if not blocks:
        return []

    image_dir = Path(cwd) / CODEX_INSTRUCTIONS_DIR / IMAGE_TEMP_DIR
    image_dir.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)

    paths: list[str] = []
    for index, block in enumerate(blocks):
        source = block["source"]
        ext = _IMAGE_EXTENSIONS.get(str(source.get("media_type", "")).lower(), "png")
        image_path = image_dir / f"{IMAGE_FILE_PREFIX}{stamp}-{index}.{ext}"
        image_path.write_bytes(base64.b64decode(source["data"]))
        paths.append(str(image_path))
    return paths


# ---------------------------------------------------------------------------
# Event normalizer
# ---------------------------------------------------------------------------


class CodexNormalizer(EventNormalizer):
    """Maps ``codex exec --json`` events onto ProviderMessage values.

    Holds the tool-use correlation table for one invocation. At most one
    result message is emitted even when both ``turn.completed`` and
    ``thread.completed`` arrive.
    """

    def __init__(
        self,
        session_id: str | None = None,
        map_error: Callable[[str, int | None], CliErrorInfo] | None = None,
    ) -> None:
        super().__init__(CODEX_CLI_NAME, session_id, map_error)
        self.tracker = ToolUseTracker(TOOL_USE_ID_PREFIX)
        self._last_text: str | None = None
        self._completed = False

    def decode(self, record: dict[str, Any]) -> list[ProviderMessage]:
        event_type = get_event_type(record)

        if event_type in (EVENT_ERROR, EVENT_TURN_FAILED):
            return [self._error(record)]

        if event_type == EVENT_THREAD_STARTED:
            thread_id = normalize_identifier(record.get("thread_id"))
            if thread_id and not self.session_id:
                self.session_id = thread_id
            return []

        if event_type == EVENT_TURN_STARTED:
            return []

        if event_type == EVENT_THREAD_COMPLETED:
            return self._result(extract_codex_text(record.get("result")))

        if event_type == EVENT_TURN_COMPLETED:
            return self._result(self._last_text)

        if event_type in (EVENT_ITEM_STARTED, EVENT_ITEM_UPDATED, EVENT_ITEM_COMPLETED):
            item = record.get("item")
            if not isinstance(item, dict):
                item = {}
            return self._decode_item(event_type, record, item)

        return self.fallback(record)

    def fallback(self, record: Any) -> list[ProviderMessage]:
        text = extract_codex_text(record) if isinstance(record, (dict, list, str)) else None
        if text:
            return [text_message(text, self.session_id)]
        return super().fallback(record)

    def _error(self, record: dict[str, Any]) -> ErrorMessage:
        raw_error = record.get("error") or record.get("message")
        text = extract_codex_text(raw_error) or DEFAULT_CLI_ERROR
        logger.error("Codex error event", extra={"error": text})
        info = classify_error(text, cli_name=CODEX_CLI_NAME)
        return ErrorMessage(
            error=with_error_tip(text), kind=info.kind.value, session_id=self.session_id
        )

    def _result(self, text: str | None) -> list[ProviderMessage]:
        if self._completed:
            return []
        self._completed = True
        return [ResultMessage(subtype="success", result=text or None, session_id=self.session_id)]

    def _decode_item(
        self, event_type: str, record: dict[str, Any], item: dict[str, Any]
    ) -> list[ProviderMessage]:
        item_type = extract_item_type(item)

        # Only item.updated carries checklist changes
        if event_type == EVENT_ITEM_UPDATED:
            return [self._todo(item)] if item_type == ITEM_TODO_LIST else []

        if event_type == EVENT_ITEM_STARTED:
            return self._item_started(item_type, record, item)

        if event_type == EVENT_ITEM_COMPLETED:
            return self._item_completed(item_type, record, item)

        return []

    def _item_started(
        self, item_type: str | None, record: dict[str, Any], item: dict[str, Any]
    ) -> list[ProviderMessage]:
        if item_type == ITEM_COMMAND_EXECUTION:
            tool = resolve_codex_tool_call(extract_command_text(item) or "")
            name, tool_input = tool.name, tool.input
        elif item_type == ITEM_MCP_TOOL_CALL:
            name = f"mcp__{item.get('server', 'unknown')}__{item.get('tool', 'unknown')}"
            arguments = item.get("arguments")
            tool_input = arguments if isinstance(arguments, dict) else {}
        elif item_type == ITEM_WEB_SEARCH:
            name, tool_input = "WebSearch", {"query": str(item.get("query", ""))}
        else:
            return []

        tool_use_id = self.tracker.register(get_item_identifier(record, item))
        return [tool_use_message(name, tool_input, tool_use_id, self.session_id)]

    def _item_completed(
        self, item_type: str | None, record: dict[str, Any], item: dict[str, Any]
    ) -> list[ProviderMessage]:
        if item_type == ITEM_REASONING:
            return [thinking_message(extract_codex_text(item) or "", self.session_id)]

        if item_type == ITEM_COMMAND_EXECUTION:
            output = (
                extract_command_output(item)
                or extract_command_text(item)
                or extract_codex_text(item)
            )
            return self._tool_result(output, record, item)

        if item_type == ITEM_MCP_TOOL_CALL:
            error = item.get("error")
            output = extract_codex_text(error) if error else None
            if output is None:
                result = item.get("result")
                if isinstance(result, dict):
                    output = extract_codex_text(result.get("content"))
                output = output or extract_codex_text(result)
            return self._tool_result(output, record, item)

        if item_type == ITEM_WEB_SEARCH:
            return self._tool_result(str(item.get("query", "")), record, item)

        if item_type == ITEM_FILE_CHANGE:
            return self._file_change(item)

        text = extract_codex_text(item) or extract_codex_text(record)
        if not text:
            return []
        if item_type == ITEM_AGENT_MESSAGE:
            self._last_text = text
        return [text_message(text, self.session_id)]

    def _tool_result(
        self, output: str | None, record: dict[str, Any], item: dict[str, Any]
    ) -> list[ProviderMessage]:
        if not output:
            # Still consume the correlation entry so later results stay paired
            self.tracker.resolve(get_item_identifier(record, item))
            return []
        tool_use_id = self.tracker.resolve(get_item_identifier(record, item))
        if tool_use_id is None:
            logger.warning(
                "Tool result without a matching tool use",
                extra={"item_id": get_item_identifier(record, item)},
            )
        return [tool_result_message(output, tool_use_id, self.session_id)]

    def _todo(self, item: dict[str, Any]) -> ProviderMessage:
        todos = extract_codex_todo_items(item)
        if todos:
            return tool_use_message(TODO_TOOL_NAME, {"todos": todos}, None, self.session_id)
        text = extract_codex_text(item)
        summary = f"Updated TODO list:\n{text}" if text else "Updated TODO list"
        return text_message(summary, self.session_id)

    def _file_change(self, item: dict[str, Any]) -> list[ProviderMessage]:
        changes = item.get("changes")
        if not isinstance(changes, list):
            return []
        blocks = []
        for change in changes:
            if not isinstance(change, dict) or not change.get("path"):
                continue
            kind = str(change.get("kind", "update"))
            blocks.append(
                ToolUseBlock(
                    name="Write" if kind == "add" else "Edit",
                    input={"file_path": str(change["path"]), "change": kind},
                    tool_use_id=self.tracker.next_id(),
                )
            )
        if not blocks:
            return []
        return [AssistantMessage(content=tuple(blocks), session_id=self.session_id)]


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CodexExecutionPlan:
    mode: Literal["cli", "sdk"]
    detection: DetectionResult
    api_key: str | None = None


class CodexProvider(CliProvider):
    """Codex CLI provider with a Responses API shortcut for tool-less requests."""

    env_allowlist = (OPENAI_API_KEY_ENV, *BASE_ENV_VARS)

    @property
    def name(self) -> str:
        return "codex"

    def get_spawn_config(self) -> CliSpawnConfig:
        return CliSpawnConfig(
            cli_name=CODEX_CLI_NAME,
            npx_package=CODEX_NPM_PACKAGE,
            common_paths={sys.platform: get_codex_cli_paths()},
        )

    def get_install_instructions(self) -> str:
        return f"Install with: npm install -g {CODEX_NPM_PACKAGE}"

    def supports_feature(self, feature: str) -> bool:
        return feature in ("tools", "text", "vision", "mcp", "structured_output")

    def _api_key(self) -> str | None:
        return self.config.api_key or os.environ.get(OPENAI_API_KEY_ENV) or None

    def has_api_key(self) -> bool:
        return bool(self._api_key())

    def is_authenticated(self) -> bool:
        return get_codex_auth_indicators().authenticated or self.has_api_key()

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        if self.config.api_key:
            env[OPENAI_API_KEY_ENV] = self.config.api_key
        return env

    def resolve_execution_plan(self, request: ExecutionRequest) -> CodexExecutionPlan:
        """Choose between the Responses API and the CLI.

        Raises:
            BackendNotInstalledError: Tools are needed and no CLI was found.
            BackendNotAuthenticatedError: The CLI is not logged in, or the
                lightweight path has no API key and no CLI to fall back on.
        """
        detection = self.ensure_detected(request.cancellation)
        api_key = self._api_key()
        sdk_eligible = request.allowed_tools == () and not request.has_mcp_servers

        if sdk_eligible:
            if api_key:
                return CodexExecutionPlan(mode="sdk", detection=detection, api_key=api_key)
            if not detection.installed:
                raise BackendNotAuthenticatedError(ERROR_CODEX_SDK_AUTH_REQUIRED)

        if not detection.installed:
            raise BackendNotInstalledError(
                ERROR_CODEX_CLI_REQUIRED, suggestion=self.get_install_instructions()
            )
        if not (get_codex_auth_indicators().authenticated or api_key):
            raise BackendNotAuthenticatedError(
                ERROR_CODEX_AUTH_REQUIRED, suggestion="Run 'codex login' to authenticate"
            )
        return CodexExecutionPlan(mode="cli", detection=detection, api_key=api_key)

    def build_system_prompt(
        self, request: ExecutionRequest, settings: CodexSettings
    ) -> str | None:
        """Instructions files, then the caller's system prompt, then the constraints preamble."""
        allowed, restrict = resolve_tool_policy(request)
        constraints = build_constraints_prompt(
            max_turns=self._max_turns(request, settings),
            allowed_tools=allowed,
            restrict_tools=restrict,
            has_output_schema=wants_output_schema(request),
            session_id=request.session_id,
        )
        parts = [
            load_codex_instructions(request.cwd or os.getcwd(), settings.auto_load_agents),
            resolve_system_prompt(request.system_prompt),
            constraints,
        ]
        return SYSTEM_PROMPT_SEPARATOR.join(part for part in parts if part) or None

    @staticmethod
    def _max_turns(request: ExecutionRequest, settings: CodexSettings) -> int | None:
        if request.max_turns is not None:
            return resolve_max_turns(request.max_turns)
        return resolve_max_turns(settings.default_max_turns)

    def _reasoning_effort(self, request: ExecutionRequest) -> str | None:
        effort = request.reasoning_effort
        if effort and effort != "none" and supports_reasoning_effort(request.model):
            return effort
        return None

    def build_cli_args(
        self,
        request: ExecutionRequest,
        *,
        settings: CodexSettings | None = None,
        output_schema_path: str | None = None,
        image_paths: Sequence[str] = (),
    ) -> list[str]:
        if settings is None:
            settings = resolve_codex_settings(request.settings, read_only=request.read_only)
        allowed, restrict = resolve_tool_policy(request)

        if request.has_mcp_servers and request.mcp_auto_approve_tools is not None:
            approval_policy = "never" if request.mcp_auto_approve_tools else "on-request"
        else:
            approval_policy = settings.approval_policy

        args = [CODEX_APPROVAL_FLAG, approval_policy]
        if settings.enable_web_search or resolve_search_enabled(allowed, restrict):
            args.append(CODEX_SEARCH_FLAG)
        for directory in settings.additional_dirs:
            args.extend([CODEX_ADD_DIR_FLAG, directory])

        args.extend(
            [
                CODEX_EXEC_SUBCOMMAND,
                CODEX_MODEL_FLAG,
                resolve_model_string(request.model),
                CODEX_JSON_FLAG,
                CODEX_SANDBOX_FLAG,
                settings.sandbox_mode,
            ]
        )
        if output_schema_path:
            args.extend([CODEX_OUTPUT_SCHEMA_FLAG, output_schema_path])
        if image_paths:
            args.extend([CODEX_IMAGE_FLAG, ",".join(image_paths)])

        overrides: list[tuple[str, Any]] = []
        max_turns = self._max_turns(request, settings)
        if max_turns is not None:
            overrides.append((CONFIG_KEY_MAX_TURNS, max_turns))
        effort = self._reasoning_effort(request)
        if effort:
            overrides.append((CONFIG_KEY_REASONING_EFFORT, effort))
        overrides.extend(build_mcp_overrides(request.mcp_servers))
        args.extend(build_config_overrides(overrides))

        # Prompt goes through stdin
        args.append(CODEX_STDIN_MARKER)
        return args

    def create_normalizer(self, request: ExecutionRequest) -> CodexNormalizer:
        return CodexNormalizer(session_id=request.session_id, map_error=self.map_error)

    def map_error(self, stderr: str, exit_code: int | None) -> CliErrorInfo:
        if looks_like_rate_limit(stderr):
            return CliErrorInfo(
                kind=ErrorKind.RATE_LIMITED,
                message="API rate limit exceeded",
                recoverable=True,
                suggestion=RATE_LIMIT_TIP.removeprefix("Tip: "),
            )
        info = classify_error(stderr, exit_code, cli_name=CODEX_CLI_NAME)
        if info.kind == ErrorKind.NOT_AUTHENTICATED:
            return replace(info, suggestion=AUTH_TIP.removeprefix("Tip: "))
        return info

    def execute_query(self, request: ExecutionRequest) -> Iterator[ProviderMessage]:
        """Stream a request through the CLI or the Responses API.

        Raises:
            BackendNotInstalledError: If tools are needed and no CLI exists.
            BackendNotAuthenticatedError: If no usable credential exists.
        """
        token = request.cancellation
        if token is not None and token.cancelled:
            return iter(())

        settings = resolve_codex_settings(request.settings, read_only=request.read_only)
        plan = self.resolve_execution_plan(request)
        logger.debug(
            "Codex execution plan",
            extra={"mode": plan.mode, "path": plan.detection.display_path},
        )
        if plan.mode == "sdk":
            return self._guard_stream(self._stream_sdk(request, settings, plan), token)
        return self._guard_stream(self._stream_cli(request, settings), token)

    def _stream_sdk(
        self, request: ExecutionRequest, settings: CodexSettings, plan: CodexExecutionPlan
    ) -> Iterator[ProviderMessage]:
        yield from execute_sdk_query(
            request,
            api_key=plan.api_key or "",
            model=resolve_model_string(request.model),
            system_prompt=self.build_system_prompt(request, settings),
            reasoning_effort=self._reasoning_effort(request),
        )

    def _stream_cli(
        self, request: ExecutionRequest, settings: CodexSettings
    ) -> Iterator[ProviderMessage]:
        cwd = request.cwd or os.getcwd()
        system_prompt = self.build_system_prompt(request, settings)
        output_schema_path = write_output_schema_file(cwd, request.output_format)
        image_paths = (
            write_image_files(cwd, extract_image_blocks(request.prompt))
            if settings.enable_images
            else []
        )
        args = self.build_cli_args(
            request,
            settings=settings,
            output_schema_path=output_schema_path,
            image_paths=image_paths,
        )
        options = replace(
            self.build_subprocess_options(request, args),
            stdin_data=build_combined_prompt(request, system_prompt),
        )
        yield from self._stream(options, self.create_normalizer(request))

    def _error_message(self, error: Exception) -> ErrorMessage:
        message = super()._error_message(error)
        if message.kind == ErrorKind.RATE_LIMITED.value:
            return replace(message, error=f"{message.error}\n\n{EXCEPTION_RATE_LIMIT_TIP}")
        return message

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=f"{CODEX_MODEL_PREFIX}{model_string}",
                name=model.name,
                model_string=model_string,
                provider=self.name,
                description=model.description,
                context_window=model.context_window,
                max_output_tokens=model.max_output_tokens,
                supports_vision=True,
                supports_tools=True,
                tier=model.tier,
                default=model.default,
            )
            for model_string, model in CODEX_MODEL_MAP.items()
        ]


__all__ = [
    "CodexProvider",
    "CodexNormalizer",
    "CodexSettings",
    "CodexExecutionPlan",
    "CODEX_MODEL_MAP",
    "resolve_codex_settings",
    "resolve_model_string",
    "supports_reasoning_effort",
    "build_combined_prompt",
    "build_constraints_prompt",
    "build_config_overrides",
    "build_mcp_overrides",
    "format_config_value",
    "load_codex_instructions",
    "write_output_schema_file",
    "write_image_files",
]
