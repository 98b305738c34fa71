import pytest
from pydantic import ValidationError

from bkeep_auth.config import MIN_SECRET_LENGTH, Settings, get_settings, reset_settings_cache


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
    monkeypatch.setenv("FRONTEND_URL", "https://books.example.com/")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com,")
    settings = Settings.from_env()

    assert settings.access_token_ttl_seconds == 120
    assert settings.frontend_url == "https://books.example.com"
    assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]


def test_blank_redis_url_means_no_redis(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "")
    assert Settings.from_env().redis_url is None


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret="too-short")


def test_missing_secrets_are_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.delenv("ACCESS_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("REFRESH_TOKEN_SECRET", raising=False)

    first = Settings.from_env()
    second = Settings.from_env()

    assert len(first.access_token_secret) >= MIN_SECRET_LENGTH
    assert first.access_token_secret == second.access_token_secret
    assert first.access_token_secret != first.refresh_token_secret
    assert (tmp_path / ".access_token_secret").read_text() == first.access_token_secret


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    monkeypatch.setenv("SMTP_PORT", "2525")
    assert get_settings() is cached
    reset_settings_cache()
    assert get_settings().smtp_port == 2525
