"""
Unit tests for settings loading.
"""
import pytest
from pydantic import ValidationError

from dockhand.CONFIG.settings import Settings, load_settings


class TestSettings:
    """Tests for layered settings."""

    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings.engine_binary == "docker"
        assert settings.default_timeout == 60.0
        assert settings.verify_after_success is True

    def test_yaml_file(self, tmp_path):
        config = tmp_path / "dockhand.yml"
        config.write_text("engine_binary: podman\ndefault_timeout: 15\n")
        settings = load_settings(config_file=str(config), environ={})
        assert settings.engine_binary == "podman"
        assert settings.default_timeout == 15.0

    def test_yaml_must_be_mapping(self, tmp_path):
        config = tmp_path / "dockhand.yml"
        config.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_settings(config_file=str(config), environ={})

    def test_env_file_overrides_yaml(self, tmp_path):
        config = tmp_path / "dockhand.yml"
        config.write_text("default_timeout: 15\n")
        env_file = tmp_path / ".env"
        env_file.write_text("DOCKHAND_DEFAULT_TIMEOUT=20\nOTHER=ignored\n")
        settings = load_settings(config_file=str(config), env_file=str(env_file), environ={})
        assert settings.default_timeout == 20.0

    def test_environment_wins(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("DOCKHAND_ENGINE_BINARY=podman\n")
        settings = load_settings(env_file=str(env_file),
                                 environ={"DOCKHAND_ENGINE_BINARY": "nerdctl",
                                          "DOCKHAND_VERIFY_AFTER_SUCCESS": "false"})
        assert settings.engine_binary == "nerdctl"
        assert settings.verify_after_success is False

    def test_missing_env_file_is_ignored(self, tmp_path):
        settings = load_settings(env_file=str(tmp_path / "absent.env"), environ={})
        assert settings.engine_binary == "docker"

    def test_invalid_value(self):
        with pytest.raises(ValidationError):
            load_settings(environ={"DOCKHAND_DEFAULT_TIMEOUT": "-1"})
        with pytest.raises(ValidationError):
            Settings(status_retry_attempts=0)
