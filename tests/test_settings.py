"""Tests for settings loading from defaults, environment and drip.yaml."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from drip_engine.config.settings import DEFAULT_DATABASE_URL, Settings, get_settings

_ENV_KEYS = (
    "LOG_LEVEL",
    "LOG_FORMAT",
    "DATABASE_URL",
    "MAX_EMAILS_PER_DAY",
    "MAX_STEPS_PER_RUN",
    "RESPECT_UNSUBSCRIBES",
)


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    """Run every test from an empty directory with no engine env vars set."""
    monkeypatch.chdir(tmp_path)
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.app_name == "Drip Engine"
        assert settings.log_level == "INFO"
        assert settings.log_format == "text"
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.max_steps_per_run == 100
        assert settings.max_seconds_per_run == 5.0
        assert settings.respect_unsubscribes is True
        assert settings.max_emails_per_day == 10
        assert settings.yaml_path is None

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()


class TestSources:
    """Tests for environment and YAML sources."""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MAX_EMAILS_PER_DAY", "3")
        monkeypatch.setenv("LOG_FORMAT", "JSON")
        settings = Settings(_env_file=None)
        assert settings.max_emails_per_day == 3
        assert settings.log_format == "json"

    def test_yaml_file(self, tmp_path):
        (tmp_path / "drip.yaml").write_text("max_steps_per_run: 25\nlog_level: debug\n")
        settings = Settings(_env_file=None)
        assert settings.max_steps_per_run == 25
        assert settings.log_level == "DEBUG"
        assert settings.yaml_path is not None

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        (tmp_path / "drip.yaml").write_text("max_steps_per_run: 25\n")
        monkeypatch.setenv("MAX_STEPS_PER_RUN", "7")
        assert Settings(_env_file=None).max_steps_per_run == 7

    def test_unresolved_placeholder_uses_default(self, tmp_path):
        (tmp_path / "drip.yaml").write_text('database_url: "${DATABASE_URL}"\n')
        assert Settings(_env_file=None).database_url == DEFAULT_DATABASE_URL

    def test_init_kwargs_win(self, monkeypatch):
        monkeypatch.setenv("MAX_EMAILS_PER_DAY", "3")
        assert Settings(_env_file=None, max_emails_per_day=5).max_emails_per_day == 5


class TestValidation:
    """Tests for field validation."""

    def test_invalid_log_level(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_invalid_log_format(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_max_steps_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, max_steps_per_run=0)
