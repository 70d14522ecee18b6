"""
Tests for Application Configuration.
"""

import pytest

from clipledger.config import ConfigurationError, Settings, get_settings, settings


class TestSettingsValidation:
    """FAIL FAST validation of critical config."""

    def test_missing_database_url(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATABASE_URL", "")

        with pytest.raises(ConfigurationError, match="DATABASE_URL is required"):
            Settings(_env_file=None)

    def test_unsupported_database_scheme(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATABASE_URL", "mysql://db/clips")

        with pytest.raises(ConfigurationError, match="PostgreSQL or SQLite"):
            Settings(_env_file=None)

    def test_poll_attempts_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="POLL_MAX_ATTEMPTS"):
            Settings(_env_file=None, poll_max_attempts=0)

    def test_negative_poll_interval(self):
        with pytest.raises(ConfigurationError, match="POLL_INTERVAL_SECONDS"):
            Settings(_env_file=None, poll_interval_seconds=-1)

    def test_postgres_url_accepted(self):
        config = Settings(
            _env_file=None, database_url="postgresql+asyncpg://clip:clip@db:5432/clipledger"
        )
        assert config.is_sqlite is False

    def test_sqlite_url_accepted(self):
        config = Settings(_env_file=None, database_url="sqlite+aiosqlite:///./clips.db")
        assert config.is_sqlite is True


class TestSettingsDefaults:
    """Defaults that the poll loop and pricing depend on."""

    def test_polling_and_pricing_defaults(self, monkeypatch: pytest.MonkeyPatch):
        for name in (
            "POLL_INTERVAL_SECONDS",
            "POLL_MAX_ATTEMPTS",
            "VEO_CREDITS_PER_SECOND",
            "SORA_CREDITS_PER_SECOND",
        ):
            monkeypatch.delenv(name, raising=False)

        config = Settings(_env_file=None)

        assert config.poll_interval_seconds == 5.0
        assert config.poll_max_attempts == 60
        assert config.veo_clip_seconds == 8
        assert config.sora_default_clip_seconds == 10

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POLL_MAX_ATTEMPTS", "12")
        monkeypatch.setenv("VEO_CREDITS_PER_SECOND", "7")

        config = Settings(_env_file=None)

        assert config.poll_max_attempts == 12
        assert config.veo_credits_per_second == 7

    def test_get_settings_returns_global(self):
        assert get_settings() is settings
