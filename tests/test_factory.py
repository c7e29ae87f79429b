"""Tests for conduit.integrations.backends.factory module."""

from unittest.mock import MagicMock

import pytest

from conduit.integrations.backends import factory as factory_module
from conduit.integrations.backends.claude import ClaudeProvider
from conduit.integrations.backends.codex import CodexProvider
from conduit.integrations.backends.cursor import CursorProvider
from conduit.integrations.backends.errors import ProviderNotFoundError
from conduit.integrations.backends.factory import (
    ProviderRegistry,
    create_default_registry,
    get_provider_for_model,
    get_registry,
    init_registry,
)
from conduit.integrations.backends.opencode import OpencodeProvider
from conduit.integrations.backends.types import ModelDefinition
from tests.fakes import FakeProvider


@pytest.fixture(autouse=True)
def reset_global_registry(monkeypatch):
    monkeypatch.setattr(factory_module, "_registry", None)


def fake_factory(name: str, **kwargs):
    return lambda: FakeProvider(name=name, **kwargs)


def model(provider: str) -> ModelDefinition:
    return ModelDefinition(id=f"{provider}-m", name="M", model_string="m", provider=provider)


class TestProviderRegistry:
    def test_highest_priority_predicate_wins(self):
        registry = ProviderRegistry(default_provider="low")
        registry.register("low", fake_factory("low"), can_handle_model=lambda m: True)
        registry.register(
            "high", fake_factory("high"), can_handle_model=lambda m: "x" in m, priority=5
        )

        assert registry.resolve_name("model-x") == "high"
        assert registry.resolve_name("model-y") == "low"

    def test_ties_keep_registration_order(self):
        registry = ProviderRegistry(default_provider="first")
        registry.register("first", fake_factory("first"), can_handle_model=lambda m: True)
        registry.register("second", fake_factory("second"), can_handle_model=lambda m: True)

        assert registry.resolve_name("anything") == "first"

    def test_name_prefix_then_default(self):
        registry = ProviderRegistry(default_provider="alpha")
        registry.register("alpha", fake_factory("alpha"))
        registry.register("beta", fake_factory("beta"))

        assert registry.resolve_name("beta-large") == "beta"
        assert registry.resolve_name("gamma-large") == "alpha"

    def test_model_ids_are_case_insensitive(self):
        seen = []
        registry = ProviderRegistry(default_provider="a")
        registry.register("a", fake_factory("a"), can_handle_model=lambda m: seen.append(m))

        registry.resolve_name("MiXeD-Model")

        assert seen == ["mixed-model"]

    def test_instances_are_cached(self):
        builds = []

        def build():
            builds.append(1)
            return FakeProvider(name="solo")

        registry = ProviderRegistry(default_provider="solo")
        registry.register("solo", build)

        first = registry.resolve("any-model")
        second = registry.get_provider_by_name("SOLO")

        assert first is second
        assert len(builds) == 1

    def test_aliases(self):
        registry = ProviderRegistry(default_provider="openai")
        registry.register("codex", fake_factory("codex"), aliases=("OpenAI",))

        assert registry.get_provider_by_name("openai").name == "codex"
        assert registry.get_provider_by_name("nope") is None

    def test_unregistered_default_raises_on_resolve(self):
        registry = ProviderRegistry(default_provider="ghost")

        with pytest.raises(ProviderNotFoundError, match="No provider found for model: m"):
            registry.resolve("m")

    def test_set_default_provider_validates(self):
        registry = ProviderRegistry()
        registry.register("alpha", fake_factory("alpha"), aliases=("a",))

        registry.set_default_provider("A")
        assert registry.default_provider == "alpha"

        with pytest.raises(ProviderNotFoundError) as exc_info:
            registry.set_default_provider("zeta")
        assert "alpha" in exc_info.value.suggestion

    def test_check_all_providers_isolates_failures(self, caplog):
        broken = FakeProvider(name="broken")
        broken.detect_installation = MagicMock(side_effect=RuntimeError("probe exploded"))
        registry = ProviderRegistry(default_provider="ok")
        registry.register("ok", fake_factory("ok"))
        registry.register("broken", lambda: broken)

        statuses = registry.check_all_providers()

        assert statuses["ok"].installed is True
        assert statuses["broken"].installed is False
        assert statuses["broken"].error == "probe exploded"
        assert "Installation check failed" in caplog.text

    def test_all_models_are_concatenated(self):
        registry = ProviderRegistry(default_provider="a")
        registry.register("a", fake_factory("a", models=[model("a")]))
        registry.register("b", fake_factory("b", models=[model("b")]))

        models = registry.get_all_available_models()

        assert [m.provider for m in models] == ["a", "b"]


class TestDefaultRegistry:
    @pytest.mark.parametrize(
        ("model", "provider_type"),
        [
            ("cursor-auto", CursorProvider),
            ("gpt-5.2", CursorProvider),
            ("Sonnet-4.5", CursorProvider),
            ("codex-gpt-5.1-codex", CodexProvider),
            ("gpt-5.1-codex-mini", CodexProvider),
            ("opencode/big-pickle", OpencodeProvider),
            ("amazon-bedrock/anthropic.claude-opus-4-5-20251101-v1:0", OpencodeProvider),
            ("claude-sonnet-4-5-20250929", ClaudeProvider),
            ("haiku", ClaudeProvider),
            ("some-unknown-model", ClaudeProvider),
        ],
    )
    def test_routing(self, model, provider_type):
        assert isinstance(create_default_registry().resolve(model), provider_type)

    def test_default_from_settings(self, default_settings):
        default_settings.default_provider = "codex"

        registry = create_default_registry()

        assert registry.default_provider == "codex"
        assert isinstance(registry.resolve("mystery"), CodexProvider)

    def test_explicit_default_wins_over_settings(self, default_settings):
        default_settings.default_provider = "codex"

        assert create_default_registry("opencode").default_provider == "opencode"

    def test_unknown_default_raises(self):
        with pytest.raises(ProviderNotFoundError, match="Unknown default provider: bogus"):
            create_default_registry("bogus")

    def test_registered_names(self):
        assert create_default_registry().registered_names() == [
            "claude",
            "cursor",
            "codex",
            "opencode",
        ]


class TestGlobalRegistry:
    def test_init_replaces_registry(self):
        first = get_registry()

        second = init_registry("cursor")

        assert second is not first
        assert get_registry() is second
        assert second.default_provider == "cursor"

    def test_get_provider_for_model(self):
        assert isinstance(get_provider_for_model("cursor-grok"), CursorProvider)
