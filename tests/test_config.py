import os

import pytest
from pydantic import ValidationError

from warden.config import Environment, Settings, get_settings, reset_settings_cache


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ENVIRONMENT", "Production")

    settings = Settings.from_env()
    assert settings.access_token_ttl_minutes == 5
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.environment is Environment.PRODUCTION
    assert settings.is_production


def test_blank_redis_url_means_disabled(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "  ")
    assert Settings.from_env().redis_url is None


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, jwt_refresh_secret="x" * 40)


def test_missing_secrets_are_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)

    first = Settings.from_env()
    second = Settings.from_env()

    assert first.jwt_secret == second.jwt_secret
    assert first.jwt_refresh_secret == second.jwt_refresh_secret
    assert first.jwt_secret != first.jwt_refresh_secret
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret
    assert oct((tmp_path / ".jwt_refresh_secret").stat().st_mode & 0o777) == "0o600"


def test_invalid_environment_rejected(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "staging")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    assert get_settings() is cached

    monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "3")
    reset_settings_cache()
    assert get_settings().login_rate_limit_per_minute == 3
    assert os.environ["TEST_MODE"] == "true"
