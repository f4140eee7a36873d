"""
Tests for authentication timing configuration.
"""

import pytest

from docchat.config.auth import (
    PLACEHOLDER_SERVER_KEY,
    AuthConfig,
    EncryptionConfig,
    parse_env_bool,
    parse_env_int,
)


class TestAuthConfigDefaults:

    def test_defaults(self):
        config = AuthConfig()

        assert config.refresh_threshold_seconds == 120
        assert config.store_ttl_grace_seconds == 7200
        assert config.session_max_age_seconds == 1800
        assert config.refresh_interval_seconds == 240
        assert config.refresh_max_retries == 3
        assert config.unauthorized_prompt_count == 3

    def test_from_env_overrides(self, monkeypatch):
        monkeypatch.setenv("AUTH_REFRESH_INTERVAL", "5")
        monkeypatch.setenv("AUTH_REDIS_TTL_EXTRA", "60")
        monkeypatch.setenv("AUTH_SHORT_ABSENCE_THRESHOLD", "1")
        monkeypatch.setenv("AUTH_SECRET", "s3cret")

        config = AuthConfig.from_env()

        assert config.refresh_interval_seconds == 300
        assert config.store_ttl_grace_seconds == 60
        assert config.short_absence_seconds == 60
        assert config.session_secret == "s3cret"

    def test_invalid_env_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("AUTH_REFRESH_MAX_RETRIES", "many")
        assert AuthConfig.from_env().refresh_max_retries == 3


class TestRetryDelay:

    @pytest.mark.parametrize("attempt,expected", [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0)])
    def test_exponential(self, attempt, expected):
        assert AuthConfig().retry_delay(attempt) == expected

    def test_capped_at_max(self):
        assert AuthConfig().retry_delay(10) == 30.0


class TestRandomizedInterval:

    def test_midpoint_is_base_interval(self):
        assert AuthConfig().randomized_interval(0.5) == 240

    def test_jitter_window_is_thirty_seconds(self):
        config = AuthConfig()
        assert config.randomized_interval(0.0) == 225
        assert config.randomized_interval(0.999) == pytest.approx(254.97)


class TestEnvHelpers:

    def test_parse_env_int(self, monkeypatch):
        monkeypatch.setenv("SOME_INT", "42")
        assert parse_env_int("SOME_INT", 1) == 42
        assert parse_env_int("MISSING_INT", 7) == 7

    def test_parse_env_bool(self, monkeypatch):
        monkeypatch.setenv("SOME_BOOL", "yes")
        assert parse_env_bool("SOME_BOOL", False) is True
        monkeypatch.setenv("SOME_BOOL", "off")
        assert parse_env_bool("SOME_BOOL", True) is False


class TestEncryptionConfig:

    def test_placeholder_is_not_configured(self):
        assert EncryptionConfig(PLACEHOLDER_SERVER_KEY).is_configured is False
        assert EncryptionConfig(None).is_configured is False
        assert EncryptionConfig("real-key").is_configured is True
