"""Tests for configuration management."""

import pytest
from pydantic import ValidationError


def create_test_settings(**kwargs):
    """Helper to create Settings instance without loading .env file."""
    from aether_guard.config import Settings

    # Disable .env file loading for tests
    return Settings(_env_file=None, **kwargs)


class TestSettingsDefaults:
    """Defaults used when nothing is configured."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("ENVIRONMENT", "LOG_TO_FILE", "POSTGRES_DSN", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = create_test_settings()

        assert settings.environment == "production"
        assert settings.log_level == "INFO"
        assert settings.log_to_file is True
        assert settings.api_host == "0.0.0.0"  # nosec B104
        assert settings.api_port == 8080
        assert settings.security_record_sanitized_events is True
        assert settings.security_allow_rereview is False
        assert settings.security_policy_refresh_seconds == 60
        assert settings.security_max_body_bytes == 10 * 1024 * 1024
        assert settings.is_development is False

    def test_log_file_paths(self) -> None:
        settings = create_test_settings(log_directory="/var/log/guard", log_file_prefix="api")
        assert settings.log_file_path == "/var/log/guard/api.log"
        assert settings.error_log_file_path == "/var/log/guard/api_error.log"
        assert settings.security_log_file_path == "/var/log/guard/api_security.log"


class TestSettingsFromEnvironment:
    """Values read from environment variables."""

    def test_security_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SECURITY_RECORD_SANITIZED_EVENTS", "false")
        monkeypatch.setenv("SECURITY_ALLOW_REREVIEW", "true")
        monkeypatch.setenv("SECURITY_POLICY_REFRESH_SECONDS", "15")
        monkeypatch.setenv("API_PORT", "9090")

        settings = create_test_settings()

        assert settings.security_record_sanitized_events is False
        assert settings.security_allow_rereview is True
        assert settings.security_policy_refresh_seconds == 15
        assert settings.api_port == 9090

    def test_database_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("POSTGRES_DSN", "postgresql://guard:s3cret@db:5432/guard")
        monkeypatch.setenv("POSTGRES_POOL_MAX_SIZE", "20")

        settings = create_test_settings()

        assert settings.postgres_dsn == "postgresql://guard:s3cret@db:5432/guard"
        assert settings.postgres_pool_max_size == 20

    def test_development_mode(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "Development")
        assert create_test_settings().is_development is True


class TestSettingsValidation:
    """Field validators."""

    @pytest.mark.parametrize("level", ["debug", "Info", "WARNING", "error", "CRITICAL"])
    def test_log_level_uppercased(self, level: str) -> None:
        assert create_test_settings(log_level=level).log_level == level.upper()

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError, match="log_level must be one of"):
            create_test_settings(log_level="VERBOSE")

    @pytest.mark.parametrize("seconds", [0, -5])
    def test_policy_refresh_must_be_positive(self, seconds: int) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(security_policy_refresh_seconds=seconds)

    def test_max_body_bytes_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(security_max_body_bytes=0)


class TestGetSettings:
    def test_cached(self) -> None:
        from aether_guard.config import get_settings

        assert get_settings() is get_settings()

    def test_cache_clear_reloads(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from aether_guard.config import get_settings

        monkeypatch.setenv("API_PORT", "7001")
        get_settings.cache_clear()
        assert get_settings().api_port == 7001
