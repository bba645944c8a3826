"""
Tests for YAML settings loading and ${ENV} substitution.
"""
from pathlib import Path

import yaml

from config.settings import (
    EngineConfig, Settings, get_settings, load_settings, reset_settings, settings_from_dict,
)


class TestSettingsFromDict:
    def test_empty_mapping_gives_defaults(self):
        settings = settings_from_dict({})
        assert isinstance(settings, Settings)
        assert settings.engine == EngineConfig()
        assert settings.database.store_backend == "memory"
        assert settings.channels == {}
        assert settings.flow_paths == []

    def test_engine_values_are_coerced(self):
        settings = settings_from_dict({"engine": {"max_hops": "12", "idle_timeout_seconds": 30}})
        assert settings.engine.max_hops == 12
        assert settings.engine.idle_timeout_seconds == 30.0
        assert settings.engine.input_max_retries == 3

    def test_env_substitution(self, monkeypatch):
        monkeypatch.setenv("WA_TOKEN", "secret")
        monkeypatch.delenv("MISSING_VAR", raising=False)
        settings = settings_from_dict({
            "channels": {"whatsapp": {"enabled": True, "credentials": {
                "access_token": "${WA_TOKEN}", "verify_token": "${MISSING_VAR}"}}},
            "variables": {"greeting": "Hi from ${WA_TOKEN}"},
        })
        creds = settings.channels["whatsapp"].credentials
        assert settings.channels["whatsapp"].enabled is True
        assert creds["access_token"] == "secret"
        assert creds["verify_token"] == "${MISSING_VAR}"
        assert settings.variables["greeting"] == "Hi from secret"

    def test_single_flow_path_string(self):
        assert settings_from_dict({"flows": "./flows"}).flow_paths == ["./flows"]

    def test_channel_without_body_is_disabled(self):
        settings = settings_from_dict({"channels": {"sms": None}})
        assert settings.channels["sms"].enabled is False
        assert settings.channels["sms"].credentials == {}


class TestLoadSettings:
    def test_load_from_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({
            "app_name": "Test",
            "database": {"store_backend": "file", "store_file_dir": str(tmp_path / "data")},
        }))
        settings = load_settings(str(path))
        assert settings.app_name == "Test"
        assert settings.database.store_backend == "file"
        assert get_settings() is settings

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.app_name == "FlowEngine"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: FromEnv\n")
        monkeypatch.setenv("FLOWENGINE_CONFIG", str(path))
        reset_settings()
        assert get_settings().app_name == "FromEnv"

    def test_bundled_settings_parse(self):
        bundled = Path(__file__).parent.parent / "config" / "settings.yaml"
        settings = load_settings(str(bundled))
        assert settings.channels["webchat"].enabled is True
        assert "voice" in settings.channels
        assert settings.variables["company_name"] == "Acme"

    def test_reset_drops_cache(self, tmp_path):
        first = load_settings(str(tmp_path / "a.yaml"))
        reset_settings()
        (tmp_path / "b.yaml").write_text("app_name: Second\n")
        second = load_settings(str(tmp_path / "b.yaml"))
        assert first is not second
        assert get_settings().app_name == "Second"
