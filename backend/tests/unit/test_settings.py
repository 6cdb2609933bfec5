"""Tests for Settings validation and derived values."""

import pytest
from pydantic import ValidationError

from coordinator.config import Settings


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.max_spawn_depth == 3
        assert settings.patrol_interval_seconds == 150
        assert settings.liveness_window_seconds == 300
        assert settings.escalation_threshold == 2
        assert settings.merge_staleness_seconds == 900

    def test_cooldown_defaults_to_liveness_window(self):
        settings = Settings(_env_file=None, liveness_window_seconds=120)
        assert settings.effective_escalation_cooldown_seconds == 120

    def test_explicit_cooldown(self):
        settings = Settings(_env_file=None, escalation_cooldown_seconds=30)
        assert settings.effective_escalation_cooldown_seconds == 30

    def test_rejects_non_positive_window(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, liveness_window_seconds=0)

    def test_rejects_zero_threshold(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, escalation_threshold=0)

    def test_rejects_negative_cooldown(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, escalation_cooldown_seconds=-1)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MAX_SPAWN_DEPTH", "5")
        monkeypatch.setenv("PATROL_ENABLED", "false")

        settings = Settings(_env_file=None)

        assert settings.max_spawn_depth == 5
        assert settings.patrol_enabled is False

    def test_cors_origins_from_comma_string(self):
        settings = Settings(_env_file=None, cors_allowed_origins="http://a.test, http://b.test")
        assert settings.cors_origins == ["http://a.test", "http://b.test"]

    def test_environment_alias(self):
        settings = Settings(_env_file=None, app_env="development", environment="production")
        assert settings.effective_env == "production"
        assert settings.is_production is True
