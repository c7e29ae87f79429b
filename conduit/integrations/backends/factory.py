"""Provider registry: route a model identifier to the provider that serves it.

Callers never import a concrete provider. At startup the host calls
``init_registry()``, which registers every known backend explicitly, and
afterwards resolves providers through ``get_registry()``.

Resolution order for a model id (lowercased first):

1. ``can_handle_model`` predicates, highest priority first. Equal
   priorities keep registration order.
2. An explicit ``<name>-`` prefix on the model id.
3. The default provider.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from conduit.config.manager import get_global_settings
from conduit.integrations.backends.base import BaseProvider
from conduit.integrations.backends.claude import ClaudeProvider, is_claude_model
from conduit.integrations.backends.codex import CODEX_MODEL_MAP, CODEX_MODEL_PREFIX, CodexProvider
from conduit.integrations.backends.cursor import (
    CURSOR_MODEL_MAP,
    CURSOR_MODEL_PREFIX,
    CursorProvider,
)
from conduit.integrations.backends.errors import ProviderNotFoundError
from conduit.integrations.backends.opencode import OpencodeProvider, is_opencode_model
from conduit.integrations.backends.types import InstallationStatus, ModelDefinition

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "claude"


@dataclass(frozen=True)
class ProviderRegistration:
    """How one backend is built and which models it claims.

    Attributes:
        name: Registry name (lowercase)
        factory: Builds the provider instance
        aliases: Alternative names accepted by get_provider_by_name()
        can_handle_model: Predicate over a lowercased model id
        priority: Higher values are consulted first
    """

    name: str
    factory: Callable[[], BaseProvider]
    aliases: tuple[str, ...] = ()
    can_handle_model: Callable[[str], bool] | None = None
    priority: int = 0


class ProviderRegistry:
    """Registered providers and the rules for choosing between them.

    Each registration's provider is built on first use and reused after
    that, so a provider's detection cache lives as long as the registry.
    """

    def __init__(self, default_provider: str = DEFAULT_PROVIDER) -> None:
        self._registrations: dict[str, ProviderRegistration] = {}
        self._instances: dict[str, BaseProvider] = {}
        self._lock = threading.Lock()
        self._default_provider = default_provider.lower()

    def register(
        self,
        name: str,
        factory: Callable[[], BaseProvider],
        *,
        aliases: tuple[str, ...] = (),
        can_handle_model: Callable[[str], bool] | None = None,
        priority: int = 0,
    ) -> None:
        key = name.lower()
        self._registrations[key] = ProviderRegistration(
            name=key,
            factory=factory,
            aliases=tuple(alias.lower() for alias in aliases),
            can_handle_model=can_handle_model,
            priority=priority,
        )
        logger.debug("Registered provider", extra={"provider": key, "priority": priority})

    @property
    def default_provider(self) -> str:
        return self._default_provider

    def set_default_provider(self, name: str) -> None:
        """Change the fallback provider.

        Raises:
            ProviderNotFoundError: If no registration has that name or alias.
        """
        registration = self._lookup(name)
        if registration is None:
            raise ProviderNotFoundError(
                f"Unknown default provider: {name}",
                suggestion=f"Choose one of: {', '.join(self.registered_names())}",
            )
        self._default_provider = registration.name

    def _by_priority(self) -> list[ProviderRegistration]:
        # sorted() is stable, so ties keep registration order
        return sorted(self._registrations.values(), key=lambda reg: -reg.priority)

    def _lookup(self, name: str) -> ProviderRegistration | None:
        key = name.lower()
        registration = self._registrations.get(key)
        if registration is not None:
            return registration
        for candidate in self._registrations.values():
            if key in candidate.aliases:
                return candidate
        return None

    def _instance(self, registration: ProviderRegistration) -> BaseProvider:
        with self._lock:
            provider = self._instances.get(registration.name)
            if provider is None:
                provider = registration.factory()
                self._instances[registration.name] = provider
            return provider

    def resolve_name(self, model_id: str) -> str:
        model = model_id.lower()
        registrations = self._by_priority()

        for registration in registrations:
            if registration.can_handle_model is not None and registration.can_handle_model(model):
                return registration.name

        for registration in registrations:
            if model.startswith(f"{registration.name}-"):
                return registration.name

        return self._default_provider

    def resolve(self, model_id: str) -> BaseProvider:
        """Provider for a model id.

        Raises:
            ProviderNotFoundError: If the resolved name is not registered.
        """
        name = self.resolve_name(model_id)
        registration = self._lookup(name)
        if registration is None:
            raise ProviderNotFoundError(f"No provider found for model: {model_id}")
        logger.debug("Resolved provider", extra={"model": model_id, "provider": name})
        return self._instance(registration)

    def get_provider_by_name(self, name: str) -> BaseProvider | None:
        registration = self._lookup(name)
        return self._instance(registration) if registration is not None else None

    def get_all_providers(self) -> list[BaseProvider]:
        return [self._instance(reg) for reg in self._registrations.values()]

    def check_all_providers(self) -> dict[str, InstallationStatus]:
        statuses: dict[str, InstallationStatus] = {}
        for name, registration in self._registrations.items():
            provider = self._instance(registration)
            try:
                statuses[name] = provider.detect_installation()
            except Exception as e:
                logger.warning(
                    "Installation check failed", extra={"provider": name, "error": str(e)}
                )
                statuses[name] = InstallationStatus(installed=False, error=str(e))
        return statuses

    def get_all_available_models(self) -> list[ModelDefinition]:
        return [
            model
            for provider in self.get_all_providers()
            for model in provider.get_available_models()
        ]

    def registered_names(self) -> list[str]:
        return list(self._registrations)


# ---------------------------------------------------------------------------
# Built-in backends
# ---------------------------------------------------------------------------


def _is_cursor_model(model: str) -> bool:
    return model.startswith(CURSOR_MODEL_PREFIX) or model in CURSOR_MODEL_MAP


def _is_codex_model(model: str) -> bool:
    return model.startswith(CODEX_MODEL_PREFIX) or model in CODEX_MODEL_MAP


def create_default_registry(default_provider: str | None = None) -> ProviderRegistry:
    """Build a registry holding every built-in backend.

    The default provider comes from the argument, then the
    ``DEFAULT_PROVIDER`` setting, then ``claude``.

    Raises:
        ProviderNotFoundError: If the chosen default is not a known backend.
    """
    registry = ProviderRegistry()
    registry.register(
        "claude",
        ClaudeProvider,
        aliases=("anthropic",),
        can_handle_model=is_claude_model,
        priority=0,
    )
    registry.register("cursor", CursorProvider, can_handle_model=_is_cursor_model, priority=10)
    registry.register(
        "codex",
        CodexProvider,
        aliases=("openai",),
        can_handle_model=_is_codex_model,
        priority=5,
    )
    registry.register(
        "opencode", OpencodeProvider, can_handle_model=is_opencode_model, priority=3
    )

    default = default_provider or get_global_settings().default_provider or DEFAULT_PROVIDER
    registry.set_default_provider(default)
    return registry


_registry: ProviderRegistry | None = None
_registry_lock = threading.Lock()


def init_registry(default_provider: str | None = None) -> ProviderRegistry:
    """Create the process-wide registry. Call once from the host's startup path."""
    global _registry
    registry = create_default_registry(default_provider)
    with _registry_lock:
        _registry = registry
    return registry


def get_registry() -> ProviderRegistry:
    """The process-wide registry, initialized with defaults on first use."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = create_default_registry()
        return _registry


def get_provider_for_model(model_id: str) -> BaseProvider:
    return get_registry().resolve(model_id)


__all__ = [
    "ProviderRegistration",
    "ProviderRegistry",
    "create_default_registry",
    "init_registry",
    "get_registry",
    "get_provider_for_model",
    "DEFAULT_PROVIDER",
]
