"""OpenCode provider.

OpenCode is distributed through npm and fronts several model vendors
(its own free tier, Amazon Bedrock, ...). On Windows it is run through
``npx`` instead of being located on disk.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from typing import Any

from conduit.integrations.backends.base import (
    BASE_ENV_VARS,
    CliProvider,
    EventNormalizer,
    ToolUseTracker,
)
from conduit.integrations.backends.errors import CliErrorInfo
from conduit.integrations.backends.types import (
    ErrorMessage,
    ExecutionRequest,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    text_message,
    tool_result_message,
    tool_use_message,
)
from conduit.platform.locator import CliSpawnConfig, SpawnStrategy
from conduit.platform.system_paths import get_opencode_auth_indicators, get_opencode_cli_paths

logger = logging.getLogger(__name__)

OPENCODE_CLI_NAME = "opencode"
OPENCODE_NPX_PACKAGE = "opencode-ai@latest"
OPENCODE_MODEL_PREFIX = "opencode-"
TOOL_USE_ID_PREFIX = "opencode-tool-"

# Vendor credentials OpenCode may route through
OPENCODE_API_KEY_ENV_VARS: tuple[str, ...] = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
)
BEDROCK_ENV_VARS: tuple[str, ...] = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_REGION",
    "AWS_PROFILE",
)

EVENT_TEXT_DELTA = "text-delta"
EVENT_TEXT_END = "text-end"
EVENT_TOOL_CALL = "tool-call"
EVENT_TOOL_RESULT = "tool-result"
EVENT_TOOL_ERROR = "tool-error"
EVENT_START_STEP = "start-step"
EVENT_FINISH_STEP = "finish-step"


class OpencodeNormalizer(EventNormalizer):
    """Maps OpenCode stream-json events onto ProviderMessage values.

    Tool calls without a ``call_id`` get a generated ``opencode-tool-<n>``
    id, and results without one are paired with those in FIFO order.
    """

    def __init__(
        self,
        session_id: str | None = None,
        map_error: Callable[[str, int | None], CliErrorInfo] | None = None,
    ) -> None:
        super().__init__(OPENCODE_CLI_NAME, session_id, map_error)
        self.tracker = ToolUseTracker(TOOL_USE_ID_PREFIX)

    def decode(self, record: dict[str, Any]) -> list[ProviderMessage]:
        event_type = record.get("type")
        session_id = record.get("session_id") or self.session_id

        if event_type == EVENT_TEXT_DELTA:
            text = record.get("text")
            if not text:
                return []
            return [text_message(str(text), session_id=session_id)]

        if event_type == EVENT_TOOL_CALL:
            call_id = record.get("call_id")
            tool_use_id = str(call_id) if call_id else self.tracker.register(None)
            args = record.get("args")
            tool_input = args if isinstance(args, dict) else {"value": args}
            return [
                tool_use_message(
                    str(record.get("name") or "unknown"), tool_input, tool_use_id, session_id
                )
            ]

        if event_type == EVENT_TOOL_RESULT:
            call_id = record.get("call_id")
            tool_use_id = str(call_id) if call_id else self.tracker.resolve(None)
            if tool_use_id is None:
                logger.warning("OpenCode tool result without a matching tool call")
            output = record.get("output")
            return [tool_result_message(str(output or ""), tool_use_id, session_id)]

        if event_type == EVENT_TOOL_ERROR:
            return [
                ErrorMessage(
                    error=str(record.get("error") or "Tool execution failed"),
                    session_id=session_id,
                )
            ]

        if event_type == EVENT_FINISH_STEP:
            if record.get("success") is False or record.get("error"):
                return [
                    ErrorMessage(
                        error=str(record.get("error") or "Step execution failed"),
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

        if event_type not in (EVENT_TEXT_END, EVENT_START_STEP):
            logger.debug("Ignoring OpenCode event", extra={"event_type": event_type})
        return []


# (id, name, description, supports_vision, tier, default)
OPENCODE_MODELS: tuple[tuple[str, str, str, bool, str, bool], ...] = (
    (
        "opencode/big-pickle",
        "Big Pickle (Free)",
        "OpenCode free tier model - great for general coding",
        False,
        "basic",
        False,
    ),
    (
        "opencode/gpt-5-nano",
        "GPT-5 Nano (Free)",
        "Fast and lightweight free tier model",
        False,
        "basic",
        False,
    ),
    (
        "opencode/grok-code",
        "Grok Code (Free)",
        "OpenCode free tier Grok model for coding",
        False,
        "basic",
        False,
    ),
    (
        "amazon-bedrock/anthropic.claude-sonnet-4-5-20250929-v1:0",
        "Claude Sonnet 4.5 (Bedrock)",
        "Latest Claude Sonnet via AWS Bedrock - fast and intelligent",
        True,
        "premium",
        True,
    ),
    (
        "amazon-bedrock/anthropic.claude-opus-4-5-20251101-v1:0",
        "Claude Opus 4.5 (Bedrock)",
        "Most capable Claude model via AWS Bedrock",
        True,
        "premium",
        False,
    ),
    (
        "amazon-bedrock/anthropic.claude-haiku-4-5-20251001-v1:0",
        "Claude Haiku 4.5 (Bedrock)",
        "Fastest Claude model via AWS Bedrock",
        True,
        "standard",
        False,
    ),
    (
        "amazon-bedrock/deepseek.r1-v1:0",
        "DeepSeek R1 (Bedrock)",
        "DeepSeek R1 reasoning model - excellent for coding",
        False,
        "premium",
        False,
    ),
    (
        "amazon-bedrock/amazon.nova-pro-v1:0",
        "Amazon Nova Pro (Bedrock)",
        "Amazon Nova Pro - balanced performance",
        True,
        "standard",
        False,
    ),
    (
        "amazon-bedrock/meta.llama4-maverick-17b-instruct-v1:0",
        "Llama 4 Maverick 17B (Bedrock)",
        "Meta Llama 4 Maverick via AWS Bedrock",
        False,
        "standard",
        False,
    ),
    (
        "amazon-bedrock/qwen.qwen3-coder-480b-a35b-v1:0",
        "Qwen3 Coder 480B (Bedrock)",
        "Qwen3 Coder 480B - excellent for coding",
        False,
        "premium",
        False,
    ),
)


def strip_opencode_prefix(model: str) -> str:
    if model.lower().startswith(OPENCODE_MODEL_PREFIX):
        return model[len(OPENCODE_MODEL_PREFIX) :]
    return model


def is_opencode_model(model: str) -> bool:
    """OpenCode ids are ``opencode-<model>`` or vendor-qualified ``vendor/model``."""
    return model.startswith(OPENCODE_MODEL_PREFIX) or "/" in model


class OpencodeProvider(CliProvider):
    env_allowlist = (*OPENCODE_API_KEY_ENV_VARS, *BEDROCK_ENV_VARS, *BASE_ENV_VARS)

    @property
    def name(self) -> str:
        return "opencode"

    def get_spawn_config(self) -> CliSpawnConfig:
        return CliSpawnConfig(
            cli_name=OPENCODE_CLI_NAME,
            windows_strategy=SpawnStrategy.NPX,
            npx_package=OPENCODE_NPX_PACKAGE,
            common_paths={sys.platform: get_opencode_cli_paths()},
        )

    def get_install_instructions(self) -> str:
        return "Install with: npm install -g opencode-ai"

    def build_cli_args(self, request: ExecutionRequest) -> list[str]:
        args = ["run", "--format", "stream-json", "-q"]
        if request.cwd:
            args.extend(["-c", request.cwd])
        if request.model:
            args.extend(["--model", strip_opencode_prefix(request.model)])
        args.append("-")
        return args

    def create_normalizer(self, request: ExecutionRequest) -> OpencodeNormalizer:
        return OpencodeNormalizer(session_id=request.session_id, map_error=self.map_error)

    def map_error(self, stderr: str, exit_code: int | None) -> CliErrorInfo:
        info = super().map_error(stderr, exit_code)
        if not stderr and exit_code is not None:
            return CliErrorInfo(
                kind=info.kind,
                message=f"OpenCode exited with code {exit_code}",
                recoverable=info.recoverable,
                suggestion=info.suggestion,
            )
        return info

    def has_api_key(self) -> bool:
        if self.config.api_key:
            return True
        return any(os.environ.get(key) for key in OPENCODE_API_KEY_ENV_VARS)

    def is_authenticated(self) -> bool:
        return self.has_api_key() or get_opencode_auth_indicators().authenticated

    def supports_feature(self, feature: str) -> bool:
        return feature in ("tools", "text", "vision")

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=model_id,
                name=name,
                model_string=model_id,
                provider=self.name,
                description=description,
                supports_tools=True,
                supports_vision=vision,
                tier=tier,
                default=default,
            )
            for model_id, name, description, vision, tier, default in OPENCODE_MODELS
        ]


__all__ = [
    "OpencodeProvider",
    "OpencodeNormalizer",
    "OPENCODE_MODELS",
    "is_opencode_model",
    "strip_opencode_prefix",
]
