"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from tripauth.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # from_env also reads a .env file from the working directory
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", "a-sufficiently-long-secret")
    for name in (
        "ACCESS_TOKEN_TTL_MINUTES",
        "REFRESH_TOKEN_TTL_MINUTES",
        "MAX_SESSIONS_PER_USER",
        "JWT_ISSUER",
        "TOKEN_ENCRYPTION_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    reset_settings_cache()


class TestSettings:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()
        assert settings.jwt_issuer == "jointrip"
        assert settings.access_token_ttl_minutes == 24 * 60
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.max_sessions_per_user == 5
        assert settings.store_timeout_seconds == 5.0

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
        clean_env.setenv("MAX_SESSIONS_PER_USER", "2")
        clean_env.setenv("USE_MEMORY_STORE", "false")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 15
        assert settings.max_sessions_per_user == 2
        assert settings.use_memory_store is False

    def test_dotenv_file_is_read(self, clean_env, tmp_path):
        clean_env.delenv("JWT_ISSUER", raising=False)
        (tmp_path / ".env").write_text("JWT_ISSUER=staging\n")
        assert Settings.from_env().jwt_issuer == "staging"

    def test_missing_secret_is_fatal(self, clean_env):
        clean_env.delenv("JWT_SECRET")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_empty_secret_is_fatal(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="")

    def test_refresh_must_outlive_access(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret="s" * 32,
                access_token_ttl_minutes=60,
                refresh_token_ttl_minutes=30,
            )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_sessions_per_user": 0},
            {"access_token_ttl_minutes": 0},
            {"store_timeout_seconds": 0},
        ],
    )
    def test_rejects_non_positive_limits(self, overrides):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="s" * 32, **overrides)

    def test_google_configured(self):
        settings = Settings(jwt_secret="s" * 32)
        assert settings.google_configured is False
        settings = Settings(
            jwt_secret="s" * 32, google_client_id="id", google_client_secret="secret"
        )
        assert settings.google_configured is True

    def test_get_settings_is_cached(self, clean_env):
        reset_settings_cache()
        first = get_settings()
        clean_env.setenv("JWT_ISSUER", "other")
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().jwt_issuer == "other"
