"""Tests for conduit.config.manager module."""

from pathlib import Path

import pytest

from conduit.config import manager as manager_module
from conduit.config.manager import ConfigManager, get_global_settings, reset_global_settings
from conduit.config.settings import DEFAULT_IDLE_TIMEOUT, Settings


@pytest.fixture
def no_env_overrides(monkeypatch):
    for key in Settings.get_config_keys():
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def isolated_dir(tmp_path: Path) -> Path:
    """A project directory whose upward search stops at a .git marker."""
    project = tmp_path / "project"
    project.mkdir()
    (project / ".git").mkdir()
    return project


@pytest.mark.usefixtures("no_env_overrides")
class TestConfigManagerLoad:
    def test_defaults_without_files(self, tmp_path, isolated_dir):
        manager = ConfigManager(tmp_path / "missing", start_dir=isolated_dir)

        settings = manager.load()

        assert settings == Settings()
        assert manager.local_config_path is None

    def test_global_file(self, temp_config_file, isolated_dir):
        settings = ConfigManager(temp_config_file, start_dir=isolated_dir).load()

        assert settings.default_provider == "codex"
        assert settings.codex_sandbox_mode == "read-only"
        assert settings.codex_enable_web_search is True
        assert settings.default_max_turns == 12
        assert settings.subprocess_idle_timeout == 45.0

    def test_local_overrides_global(self, temp_config_file, isolated_dir):
        (isolated_dir / ".conduit").write_text("DEFAULT_PROVIDER=cursor\n")
        manager = ConfigManager(temp_config_file, start_dir=isolated_dir)

        settings = manager.load()

        assert settings.default_provider == "cursor"
        assert settings.codex_sandbox_mode == "read-only"
        assert manager.get_source("DEFAULT_PROVIDER").startswith("local")
        assert manager.get_source("CODEX_SANDBOX_MODE") == "global"

    def test_environment_overrides_files(self, temp_config_file, isolated_dir, monkeypatch):
        (isolated_dir / ".conduit").write_text("DEFAULT_PROVIDER=cursor\n")
        monkeypatch.setenv("DEFAULT_PROVIDER", "opencode")
        manager = ConfigManager(temp_config_file, start_dir=isolated_dir)

        settings = manager.load()

        assert settings.default_provider == "opencode"
        assert manager.get_source("DEFAULT_PROVIDER") == "environment"

    def test_local_config_found_in_parent(self, tmp_path, isolated_dir):
        (isolated_dir / ".conduit").write_text("DEFAULT_MAX_TURNS=3\n")
        nested = isolated_dir / "src" / "pkg"
        nested.mkdir(parents=True)
        manager = ConfigManager(tmp_path / "missing", start_dir=nested)

        settings = manager.load()

        assert settings.default_max_turns == 3
        assert manager.local_config_path == isolated_dir / ".conduit"

    def test_search_stops_at_repository_root(self, tmp_path):
        (tmp_path / ".conduit").write_text("DEFAULT_MAX_TURNS=9\n")
        repo = tmp_path / "repo"
        (repo / ".git").mkdir(parents=True)

        settings = ConfigManager(tmp_path / "missing", start_dir=repo).load()

        assert settings.default_max_turns == 0

    def test_quotes_comments_and_escapes(self, tmp_path, isolated_dir):
        config = tmp_path / "cfg"
        config.write_text(
            "# comment\n"
            "\n"
            'CODEX_ADDITIONAL_DIRS="/a, /b"\n'
            "CODEX_APPROVAL_POLICY='never'\n"
            'DEFAULT_PROVIDER="say \\"hi\\""\n'
            "not a setting\n"
        )
        manager = ConfigManager(config, start_dir=isolated_dir)

        settings = manager.load()

        assert settings.get_codex_additional_dirs() == ["/a", "/b"]
        assert settings.codex_approval_policy == "never"
        assert manager.get("DEFAULT_PROVIDER") == 'say "hi"'

    def test_invalid_enum_value_keeps_default(self, tmp_path, isolated_dir, caplog):
        config = tmp_path / "cfg"
        config.write_text("CODEX_SANDBOX_MODE=yolo\n")

        settings = ConfigManager(config, start_dir=isolated_dir).load()

        assert settings.codex_sandbox_mode == "workspace-write"
        assert "Invalid CODEX_SANDBOX_MODE value 'yolo'" in caplog.text

    def test_invalid_number_keeps_default(self, tmp_path, isolated_dir):
        config = tmp_path / "cfg"
        config.write_text("DEFAULT_MAX_TURNS=lots\nSUBPROCESS_IDLE_TIMEOUT=soon\n")

        settings = ConfigManager(config, start_dir=isolated_dir).load()

        assert settings.default_max_turns == 0
        assert settings.subprocess_idle_timeout == DEFAULT_IDLE_TIMEOUT

    @pytest.mark.parametrize(("raw", "expected"), [("1", True), ("YES", True), ("off", False)])
    def test_boolean_parsing(self, tmp_path, isolated_dir, raw, expected):
        config = tmp_path / "cfg"
        config.write_text(f"CODEX_AUTO_LOAD_AGENTS={raw}\n")

        settings = ConfigManager(config, start_dir=isolated_dir).load()

        assert settings.codex_auto_load_agents is expected

    def test_reload_starts_clean(self, tmp_path, isolated_dir):
        config = tmp_path / "cfg"
        config.write_text("DEFAULT_MAX_TURNS=4\n")
        manager = ConfigManager(config, start_dir=isolated_dir)
        manager.load()

        config.write_text("")
        settings = manager.load()

        assert settings.default_max_turns == 0
        assert manager.get("DEFAULT_MAX_TURNS", "unset") == "unset"


class TestSettingsHelpers:
    def test_idle_timeout_defaults_to_thirty_seconds(self):
        assert Settings().get_idle_timeout() == 30.0

    def test_idle_timeout_disabled_when_zero(self):
        assert Settings(subprocess_idle_timeout=0).get_idle_timeout() is None
        assert Settings(subprocess_idle_timeout=12.5).get_idle_timeout() == 12.5

    def test_key_mapping_round_trip(self):
        settings = Settings()

        assert settings.get_attribute_for_key("DEFAULT_PROVIDER") == "default_provider"
        assert settings.get_key_for_attribute("codex_sandbox_mode") == "CODEX_SANDBOX_MODE"
        assert settings.get_attribute_for_key("UNKNOWN") is None


class TestGlobalSettings:
    def test_loaded_once_and_cached(self, monkeypatch):
        monkeypatch.setattr(manager_module, "_global_settings", None)
        loads = []

        def fake_load(self):
            loads.append(self)
            return Settings(default_provider="cursor")

        monkeypatch.setattr(ConfigManager, "load", fake_load)

        first = get_global_settings()
        second = get_global_settings()

        assert first is second
        assert first.default_provider == "cursor"
        assert len(loads) == 1

    def test_reset_forces_reload(self, monkeypatch):
        monkeypatch.setattr(ConfigManager, "load", lambda self: Settings())
        before = get_global_settings()

        reset_global_settings()

        assert get_global_settings() is not before

    def test_unreadable_config_falls_back_to_defaults(self, monkeypatch):
        monkeypatch.setattr(manager_module, "_global_settings", None)

        def broken_load(self):
            raise OSError("permission denied")

        monkeypatch.setattr(ConfigManager, "load", broken_load)

        assert get_global_settings() == Settings()
