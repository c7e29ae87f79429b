"""Provider execution layer for AI coding-agent backends.

This package provides one message protocol over several backends:
- Claude (Claude Code CLI)
- Codex (OpenAI Codex CLI, or the Responses API for tool-free requests)
- Cursor (Cursor Agent CLI)
- OpenCode (OpenCode CLI)

Modules:
- types: ExecutionRequest and the ProviderMessage vocabulary
- errors: ErrorKind, ProviderError hierarchy and classify_error()
- base: Provider protocol, BaseProvider, CliProvider and EventNormalizer
- factory: ProviderRegistry, init_registry() and get_registry()
- model_discovery: Remote model listing through vendor APIs
"""

from conduit.integrations.backends.base import (
    BaseProvider,
    CliProvider,
    EventNormalizer,
    Provider,
    ProviderConfig,
    ToolUseTracker,
)
from conduit.integrations.backends.claude import ClaudeProvider
from conduit.integrations.backends.codex import CodexProvider
from conduit.integrations.backends.cursor import CursorProvider
from conduit.integrations.backends.errors import (
    BackendNotAuthenticatedError,
    BackendNotInstalledError,
    BackendRateLimitError,
    BackendTimeoutError,
    CliErrorInfo,
    ErrorKind,
    ProviderError,
    ProviderNotFoundError,
    classify_error,
)
from conduit.integrations.backends.factory import (
    ProviderRegistry,
    get_provider_for_model,
    get_registry,
    init_registry,
)
from conduit.integrations.backends.opencode import OpencodeProvider
from conduit.integrations.backends.types import (
    AssistantMessage,
    ConversationMessage,
    ErrorMessage,
    ExecutionRequest,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

__all__ = [
    # Protocol and base classes
    "Provider",
    "BaseProvider",
    "CliProvider",
    "ProviderConfig",
    "EventNormalizer",
    "ToolUseTracker",
    # Provider implementations
    "ClaudeProvider",
    "CodexProvider",
    "CursorProvider",
    "OpencodeProvider",
    # Messages and requests
    "ExecutionRequest",
    "ConversationMessage",
    "ProviderMessage",
    "AssistantMessage",
    "ResultMessage",
    "ErrorMessage",
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "InstallationStatus",
    "ModelDefinition",
    # Error types
    "ErrorKind",
    "CliErrorInfo",
    "ProviderError",
    "BackendNotInstalledError",
    "BackendNotAuthenticatedError",
    "BackendRateLimitError",
    "BackendTimeoutError",
    "ProviderNotFoundError",
    "classify_error",
    # Registry
    "ProviderRegistry",
    "init_registry",
    "get_registry",
    "get_provider_for_model",
]
