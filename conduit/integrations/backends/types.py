"""Shared types for the provider execution layer.

Callers build an ExecutionRequest, hand it to a provider, and consume a
stream of ProviderMessage values. The message shapes are identical across
every backend; backend-native records never leave a provider.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from conduit.platform.cancellation import CancellationToken

# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str
    type: Literal["thinking"] = "thinking"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "thinking": self.thinking}


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation reported by the backend.

    Attributes:
        name: Tool name in the shared vocabulary (Read, Bash, Grep, ...)
        input: Tool arguments
        tool_use_id: Identifier that the matching ToolResultBlock repeats
    """

    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None
    type: Literal["tool_use"] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "name": self.name, "input": dict(self.input)}
        if self.tool_use_id is not None:
            data["tool_use_id"] = self.tool_use_id
        return data


@dataclass(frozen=True)
class ToolResultBlock:
    content: str
    tool_use_id: str | None = None
    type: Literal["tool_result"] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "content": self.content}
        if self.tool_use_id is not None:
            data["tool_use_id"] = self.tool_use_id
        return data


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


# ---------------------------------------------------------------------------
# Provider messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssistantMessage:
    content: tuple[ContentBlock, ...]
    session_id: str | None = None
    type: Literal["assistant"] = "assistant"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "message": {
                "role": "assistant",
                "content": [block.to_dict() for block in self.content],
            },
        }
        if self.session_id:
            data["session_id"] = self.session_id
        return data


@dataclass(frozen=True)
class ResultMessage:
    """Terminal summary of an invocation.

    Attributes:
        subtype: "success" or "error"
        result: Optional final text
    """

    subtype: Literal["success", "error"] = "success"
    result: str | None = None
    session_id: str | None = None
    type: Literal["result"] = "result"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "subtype": self.subtype}
        if self.result is not None:
            data["result"] = self.result
        if self.session_id:
            data["session_id"] = self.session_id
        return data


@dataclass(frozen=True)
class ErrorMessage:
    """A failure surfaced to the caller.

    Attributes:
        error: Human-readable message
        suggestion: Remediation hint, when the failure is classifiable
        kind: Error kind name (see ErrorKind), when known
    """

    error: str
    suggestion: str | None = None
    kind: str | None = None
    session_id: str | None = None
    type: Literal["error"] = "error"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "error": self.error}
        if self.suggestion:
            data["suggestion"] = self.suggestion
        if self.kind:
            data["kind"] = self.kind
        if self.session_id:
            data["session_id"] = self.session_id
        return data


ProviderMessage = Union[AssistantMessage, ResultMessage, ErrorMessage]


def text_message(text: str, session_id: str | None = None) -> AssistantMessage:
    return AssistantMessage(content=(TextBlock(text),), session_id=session_id)


def thinking_message(thinking: str, session_id: str | None = None) -> AssistantMessage:
    return AssistantMessage(content=(ThinkingBlock(thinking),), session_id=session_id)


def tool_use_message(
    name: str,
    tool_input: Mapping[str, Any],
    tool_use_id: str | None,
    session_id: str | None = None,
) -> AssistantMessage:
    return AssistantMessage(
        content=(ToolUseBlock(name=name, input=tool_input, tool_use_id=tool_use_id),),
        session_id=session_id,
    )


def tool_result_message(
    content: str, tool_use_id: str | None, session_id: str | None = None
) -> AssistantMessage:
    return AssistantMessage(
        content=(ToolResultBlock(content=content, tool_use_id=tool_use_id),),
        session_id=session_id,
    )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationMessage:
    """One prior turn of conversation history.

    ``content`` is plain text or a sequence of ``{"type": ..., "text": ...}``
    blocks.
    """

    role: Literal["user", "assistant"]
    content: str | Sequence[Mapping[str, Any]]


@dataclass(frozen=True)
class ExecutionRequest:
    """One unit of work for a provider. Never mutated after creation.

    Attributes:
        prompt: Plain text, or content blocks such as
            ``{"type": "text", "text": ...}`` and
            ``{"type": "image", "source": {"type": "base64", "media_type": ..., "data": ...}}``
        model: Target model identifier
        cwd: Working directory for the backend
        conversation_history: Earlier turns, oldest first
        system_prompt: Override text, or ``{"append": text}`` to extend the default
        allowed_tools: Tool allow-list; None means the backend default, empty means no tools
        max_turns: Turn cap
        output_format: Structured-output request, as
            ``{"type": "json_schema", "schema": {...}}``
        cancellation: Token threaded through detection, spawn and streaming
        settings: Backend-specific overrides (e.g. sandbox_mode, approval_policy)
        mcp_servers: MCP server configurations keyed by name
        session_id: Session to resume or report
        reasoning_effort: Reasoning hint for models that support it
        read_only: Forbid file modifications
        mcp_unrestricted_tools: Let MCP-enabled runs use any tool
        mcp_auto_approve_tools: Auto-approve MCP tool calls
    """

    prompt: str | Sequence[Mapping[str, Any]]
    model: str
    cwd: str
    conversation_history: Sequence[ConversationMessage] = ()
    system_prompt: str | Mapping[str, Any] | None = None
    allowed_tools: Sequence[str] | None = None
    max_turns: int | None = None
    output_format: Mapping[str, Any] | None = None
    cancellation: CancellationToken | None = None
    settings: Mapping[str, Any] = field(default_factory=dict)
    mcp_servers: Mapping[str, Mapping[str, Any]] | None = None
    session_id: str | None = None
    reasoning_effort: str | None = None
    read_only: bool = False
    mcp_unrestricted_tools: bool | None = None
    mcp_auto_approve_tools: bool | None = None

    def __post_init__(self) -> None:
        # Freeze caller-provided sequences so the request stays immutable
        if not isinstance(self.prompt, str):
            object.__setattr__(self, "prompt", tuple(self.prompt))
        object.__setattr__(self, "conversation_history", tuple(self.conversation_history))
        if self.allowed_tools is not None:
            object.__setattr__(self, "allowed_tools", tuple(self.allowed_tools))

    @property
    def has_mcp_servers(self) -> bool:
        return bool(self.mcp_servers)


def extract_text(content: str | Sequence[Mapping[str, Any]]) -> str:
    """Join the text parts of a prompt or history entry with newlines."""
    if isinstance(content, str):
        return content
    parts = [
        str(block.get("text", ""))
        for block in content
        if isinstance(block, Mapping) and block.get("type") == "text" and block.get("text")
    ]
    return "\n".join(parts)


def extract_image_blocks(
    content: str | Sequence[Mapping[str, Any]],
) -> list[Mapping[str, Any]]:
    if isinstance(content, str):
        return []
    return [
        block
        for block in content
        if isinstance(block, Mapping) and block.get("type") == "image"
    ]


def format_history_as_text(history: Sequence[ConversationMessage]) -> str:
    """Render history as a plain-text transcript prefix.

    Returns an empty string for empty history; otherwise a block ending in
    a separator so the current prompt can follow directly.
    """
    if not history:
        return ""

    lines = ["Previous conversation:", ""]
    for entry in history:
        role = "User" if entry.role == "user" else "Assistant"
        lines.append(f"{role}: {extract_text(entry.content)}")
        lines.append("")
    lines.append("---")
    lines.append("")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Installation and models
# ---------------------------------------------------------------------------


@dataclass
class InstallationStatus:
    """What a provider found when probing its installation.

    Attributes:
        installed: A usable execution path exists
        path: Where the CLI was found
        version: Reported CLI version
        method: How it is used ("cli", "wsl", "npm", "sdk")
        has_api_key: An API key is available
        authenticated: Login state looked valid
        error: Probe failure description
    """

    installed: bool
    path: str | None = None
    version: str | None = None
    method: str | None = None
    has_api_key: bool = False
    authenticated: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.installed,
            "path": self.path,
            "version": self.version,
            "method": self.method,
            "has_api_key": self.has_api_key,
            "authenticated": self.authenticated,
            "error": self.error,
        }


@dataclass(frozen=True)
class ModelDefinition:
    """A model a provider can serve.

    Attributes:
        id: Identifier callers pass as ``model``
        name: Display name
        model_string: Identifier passed to the backend
        provider: Owning provider name
        description: One-line description
        supports_tools: Whether tool use works with this model
        supports_vision: Whether image input works with this model
        tier: "basic", "standard" or "premium"
        default: Provider default model
    """

    id: str
    name: str
    model_string: str
    provider: str
    description: str = ""
    context_window: int | None = None
    max_output_tokens: int | None = None
    supports_vision: bool = False
    supports_tools: bool = True
    tier: str | None = None
    default: bool = False


__all__ = [
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "ContentBlock",
    "AssistantMessage",
    "ResultMessage",
    "ErrorMessage",
    "ProviderMessage",
    "text_message",
    "thinking_message",
    "tool_use_message",
    "tool_result_message",
    "ConversationMessage",
    "ExecutionRequest",
    "extract_text",
    "extract_image_blocks",
    "format_history_as_text",
    "InstallationStatus",
    "ModelDefinition",
]
