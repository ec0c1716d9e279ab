"""Tests for the settings module."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from egress_service import config
from egress_service.config import Environment, LogLevel, Settings, get_settings, reload_settings, validate_settings


class TestSettingsDefaults:
    """Test default configuration values."""

    def test_defaults(self, monkeypatch):
        """Test defaults when no environment is set."""
        monkeypatch.delenv("EGRESS_MAX_ACTIVE_EGRESS", raising=False)
        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEVELOPMENT
        assert settings.log_level == LogLevel.INFO
        assert settings.log_format == "json"
        assert settings.default_base_url == "https://recorder.livekit.io"
        assert settings.output_directory == Path("/tmp/egress")
        assert settings.segment_duration == 6
        assert settings.max_active_egress == 0
        assert settings.delivery_max_attempts == 3
        assert settings.database_url is None
        assert not settings.persistence_enabled

    def test_retry_config(self):
        """Test retry policy is exposed as a dict."""
        settings = Settings(_env_file=None, delivery_base_delay=0.25, delivery_max_delay=5)

        assert settings.retry_config == {
            "max_attempts": 3,
            "base_delay": 0.25,
            "max_delay": 5,
            "exponential_base": 2.0,
            "jitter": True,
        }

    def test_logging_config(self):
        settings = Settings(_env_file=None, log_level="DEBUG", log_format="TEXT")

        assert settings.logging_config == {"level": "DEBUG", "format": "text", "debug": False}


class TestSettingsEnvironment:
    """Test loading from environment variables."""

    def test_env_prefix(self, monkeypatch):
        """Test EGRESS_ prefixed variables are picked up."""
        monkeypatch.setenv("EGRESS_MAX_ACTIVE_EGRESS", "4")
        monkeypatch.setenv("EGRESS_ENVIRONMENT", "production")
        monkeypatch.setenv("EGRESS_DATABASE_URL", "sqlite:///egress.db")

        settings = Settings(_env_file=None)

        assert settings.max_active_egress == 4
        assert settings.is_production
        assert settings.persistence_enabled

    def test_reload_settings(self, monkeypatch):
        """Test reload picks up changed environment."""
        monkeypatch.setenv("EGRESS_SEGMENT_DURATION", "4")
        first = reload_settings()
        assert first.segment_duration == 4
        assert get_settings() is first

        monkeypatch.setenv("EGRESS_SEGMENT_DURATION", "10")
        second = reload_settings()
        assert second.segment_duration == 10
        assert get_settings() is second

        monkeypatch.setattr(config, "_settings", None)


class TestSettingsValidation:
    """Test validators."""

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_base_url_must_be_http(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, default_base_url="ftp://recorder.example.com")

    def test_base_url_trailing_slash_removed(self):
        settings = Settings(_env_file=None, default_base_url="https://recorder.example.com/")
        assert settings.default_base_url == "https://recorder.example.com"

    def test_base_delay_above_max_delay(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, delivery_base_delay=20, delivery_max_delay=10)

    def test_segment_duration_bounds(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, segment_duration=0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, segment_duration=61)

    def test_validate_settings_report(self, monkeypatch):
        """Test production without persistence is flagged."""
        monkeypatch.setattr(config, "_settings", Settings(_env_file=None, environment="production"))

        report = validate_settings()

        assert report["valid"] is True
        assert report["environment"] == "production"
        assert report["persistence"] is False
        assert report["warnings"]

        monkeypatch.setattr(config, "_settings", None)
