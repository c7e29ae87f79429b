"""Claude Code CLI provider.

Runs ``claude -p --output-format stream-json --verbose`` with the prompt on
stdin. Claude's records already use the shared message vocabulary, so the
normalizer mostly re-shapes them into typed messages. This is the
registry's default provider.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Callable
from typing import Any

from conduit.integrations.backends.base import (
    BASE_ENV_VARS,
    CliProvider,
    EventNormalizer,
    resolve_max_turns,
    resolve_system_prompt,
)
from conduit.integrations.backends.errors import (
    CliErrorInfo,
    ErrorKind,
    classify_error,
    matches_common_rate_limit,
)
from conduit.integrations.backends.types import (
    AssistantMessage,
    ContentBlock,
    ErrorMessage,
    ExecutionRequest,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    extract_text,
    format_history_as_text,
)
from conduit.platform.locator import CliSpawnConfig
from conduit.platform.system_paths import get_claude_auth_indicators, get_claude_cli_paths

logger = logging.getLogger(__name__)

CLAUDE_CLI_NAME = "claude"
ANTHROPIC_API_KEY_ENV = "ANTHROPIC_API_KEY"
CLAUDE_ENV_VARS: tuple[str, ...] = (
    ANTHROPIC_API_KEY_ENV,
    "ANTHROPIC_BASE_URL",
    "CLAUDE_CONFIG_DIR",
)

# Short aliases accepted in place of full model ids
CLAUDE_MODEL_MAP: dict[str, str] = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}

# Anthropic returns 529 when overloaded
_OVERLOADED_STATUS_RE = re.compile(r"\b529\b")


def resolve_claude_model(model: str) -> str:
    return CLAUDE_MODEL_MAP.get(model.lower(), model)


def is_claude_model(model: str) -> bool:
    return model.startswith("claude-") or any(
        alias in model for alias in ("opus", "sonnet", "haiku")
    )


def looks_like_rate_limit(output: str) -> bool:
    return matches_common_rate_limit(
        output, extra_keywords=("overloaded",), extra_status_re=_OVERLOADED_STATUS_RE
    )


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return extract_text(content)
    if content is None:
        return ""
    return json.dumps(content)


class ClaudeNormalizer(EventNormalizer):
    """Maps Claude stream-json records onto ProviderMessage values."""

    def __init__(
        self,
        session_id: str | None = None,
        map_error: Callable[[str, int | None], CliErrorInfo] | None = None,
    ) -> None:
        super().__init__(CLAUDE_CLI_NAME, session_id, map_error)

    def decode(self, record: dict[str, Any]) -> list[ProviderMessage]:
        if record.get("session_id"):
            self.session_id = str(record["session_id"])

        record_type = record.get("type")
        if record_type in ("assistant", "user"):
            message = record.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            blocks = self._blocks(content)
            if not blocks:
                return []
            return [AssistantMessage(content=tuple(blocks), session_id=self.session_id)]

        if record_type == "result":
            return [self._result(record)]

        # system/init and stream bookkeeping records
        return []

    def _blocks(self, content: Any) -> list[ContentBlock]:
        if isinstance(content, str):
            return [TextBlock(content)] if content else []
        if not isinstance(content, list):
            return []

        blocks: list[ContentBlock] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            block_type = item.get("type")
            if block_type == "text" and item.get("text"):
                blocks.append(TextBlock(str(item["text"])))
            elif block_type == "thinking" and item.get("thinking"):
                blocks.append(ThinkingBlock(str(item["thinking"])))
            elif block_type == "tool_use":
                tool_input = item.get("input")
                blocks.append(
                    ToolUseBlock(
                        name=str(item.get("name") or "unknown"),
                        input=tool_input if isinstance(tool_input, dict) else {},
                        tool_use_id=item.get("id") or item.get("tool_use_id"),
                    )
                )
            elif block_type == "tool_result":
                blocks.append(
                    ToolResultBlock(
                        content=_tool_result_text(item.get("content")),
                        tool_use_id=item.get("tool_use_id"),
                    )
                )
        return blocks

    def _result(self, record: dict[str, Any]) -> ProviderMessage:
        result = record.get("result")
        text = result if isinstance(result, str) else None
        if record.get("is_error"):
            error = str(record.get("error") or text or "Unknown error")
            if self._map_error is not None:
                info = self._map_error(error, None)
            else:
                info = classify_error(error, cli_name=CLAUDE_CLI_NAME)
            return ErrorMessage(
                error=error,
                suggestion=info.suggestion,
                kind=info.kind.value,
                session_id=self.session_id,
            )
        # error_max_turns and similar subtypes end the run without failing it
        subtype = "success" if record.get("subtype", "success") == "success" else "error"
        return ResultMessage(subtype=subtype, result=text, session_id=self.session_id)


class ClaudeProvider(CliProvider):
    env_allowlist = (*CLAUDE_ENV_VARS, *BASE_ENV_VARS)

    @property
    def name(self) -> str:
        return "claude"

    def get_spawn_config(self) -> CliSpawnConfig:
        return CliSpawnConfig(
            cli_name=CLAUDE_CLI_NAME,
            common_paths={sys.platform: get_claude_cli_paths()},
        )

    def get_install_instructions(self) -> str:
        return "Install with: npm install -g @anthropic-ai/claude-code"

    def build_cli_args(self, request: ExecutionRequest) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--verbose"]
        if request.model:
            args.extend(["--model", resolve_claude_model(request.model)])
        max_turns = resolve_max_turns(request.max_turns)
        if max_turns is not None:
            args.extend(["--max-turns", str(max_turns)])
        if request.allowed_tools is not None:
            if request.allowed_tools:
                args.extend(["--allowedTools", ",".join(request.allowed_tools)])
            else:
                args.extend(["--tools", ""])
        system_prompt = resolve_system_prompt(request.system_prompt)
        if system_prompt:
            args.extend(["--append-system-prompt", system_prompt])
        if request.read_only:
            args.extend(["--permission-mode", "plan"])
        if request.session_id:
            args.extend(["--resume", request.session_id])
        if request.mcp_servers:
            mcp_config = {"mcpServers": {k: dict(v) for k, v in request.mcp_servers.items()}}
            args.extend(["--mcp-config", json.dumps(mcp_config)])
        return args

    def build_stdin(self, request: ExecutionRequest) -> str | None:
        history = format_history_as_text(request.conversation_history)
        return f"{history}{extract_text(request.prompt)}"

    def create_normalizer(self, request: ExecutionRequest) -> ClaudeNormalizer:
        return ClaudeNormalizer(session_id=request.session_id, map_error=self.map_error)

    def map_error(self, stderr: str, exit_code: int | None) -> CliErrorInfo:
        if looks_like_rate_limit(stderr):
            return CliErrorInfo(
                kind=ErrorKind.RATE_LIMITED,
                message="Anthropic API rate limit exceeded",
                recoverable=True,
                suggestion="Wait a few minutes and try again",
            )
        info = classify_error(stderr, exit_code, cli_name=CLAUDE_CLI_NAME)
        if info.kind == ErrorKind.NOT_AUTHENTICATED:
            return CliErrorInfo(
                kind=info.kind,
                message="Claude Code is not authenticated",
                recoverable=True,
                suggestion=(
                    f'Run "{CLAUDE_CLI_NAME}" and use /login, or set {ANTHROPIC_API_KEY_ENV}'
                ),
            )
        return info

    def has_api_key(self) -> bool:
        return bool(self.config.api_key or os.environ.get(ANTHROPIC_API_KEY_ENV))

    def is_authenticated(self) -> bool:
        if self.has_api_key() or get_claude_auth_indicators().authenticated:
            return True
        # On macOS the login lives in the keychain, which is not inspected
        return sys.platform == "darwin"

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        if self.config.api_key:
            env[ANTHROPIC_API_KEY_ENV] = self.config.api_key
        return env

    def supports_feature(self, feature: str) -> bool:
        return feature in ("tools", "text", "vision", "thinking", "mcp")

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=CLAUDE_MODEL_MAP["opus"],
                name="Claude Opus 4.5",
                model_string=CLAUDE_MODEL_MAP["opus"],
                provider=self.name,
                description="Most capable Claude model",
                context_window=200000,
                supports_vision=True,
                tier="premium",
                default=True,
            ),
            ModelDefinition(
                id=CLAUDE_MODEL_MAP["sonnet"],
                name="Claude Sonnet 4.5",
                model_string=CLAUDE_MODEL_MAP["sonnet"],
                provider=self.name,
                description="Balanced speed and capability",
                context_window=200000,
                supports_vision=True,
                tier="standard",
            ),
            ModelDefinition(
                id=CLAUDE_MODEL_MAP["haiku"],
                name="Claude Haiku 4.5",
                model_string=CLAUDE_MODEL_MAP["haiku"],
                provider=self.name,
                description="Fastest Claude model",
                context_window=200000,
                supports_vision=True,
                tier="basic",
            ),
        ]


__all__ = [
    "ClaudeProvider",
    "ClaudeNormalizer",
    "CLAUDE_MODEL_MAP",
    "is_claude_model",
    "resolve_claude_model",
    "looks_like_rate_limit",
]
