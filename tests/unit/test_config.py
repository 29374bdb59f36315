"""Tests for engine settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from rapengine.core.config import DEFAULT_DATABASE_URL, EngineSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("RAPENGINE_URL", "RAPENGINE_SCHEMA_DIR", "RAPENGINE_LOCALE", "RAPENGINE_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_defaults(self):
        settings = EngineSettings.from_env()
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.schema_dir is None
        assert settings.default_locale == "en"
        assert settings.locales == ["en", "de"]
        assert settings.log_level == "WARNING"
        assert settings.echo is False

    def test_environment(self, monkeypatch):
        """RAPENGINE_* variables are read."""
        monkeypatch.setenv("RAPENGINE_URL", "sqlite:///:memory:")
        monkeypatch.setenv("RAPENGINE_SCHEMA_DIR", "models")
        monkeypatch.setenv("RAPENGINE_LOCALE", "de")
        monkeypatch.setenv("RAPENGINE_LOG_LEVEL", "debug")

        settings = EngineSettings.from_env()
        assert settings.database_url == "sqlite:///:memory:"
        assert settings.schema_dir == Path("models")
        assert settings.default_locale == "de"
        assert settings.log_level == "DEBUG"

    def test_overrides_win(self, monkeypatch):
        """Explicit values beat environment variables; None means not given."""
        monkeypatch.setenv("RAPENGINE_URL", "sqlite:///env.db")
        monkeypatch.setenv("RAPENGINE_LOCALE", "de")

        settings = EngineSettings.from_env(database_url="sqlite:///cli.db", default_locale=None)
        assert settings.database_url == "sqlite:///cli.db"
        assert settings.default_locale == "de"

    def test_frozen(self):
        settings = EngineSettings()
        with pytest.raises(ValidationError):
            settings.echo = True
