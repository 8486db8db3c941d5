"""Tests for environment-driven settings."""

import pytest

from coursegate.config import Settings, get_settings, reset_settings_cache


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_env_names_map_to_fields(monkeypatch):
    monkeypatch.setenv("TWO_FACTOR_CODE_TTL_MINUTES", "5")
    monkeypatch.setenv("MAX_SESSIONS_PER_USER", "4")
    monkeypatch.setenv("ENFORCE_SESSION_LIVENESS", "true")

    settings = Settings.from_env()

    assert settings.two_factor_code_ttl_minutes == 5
    assert settings.max_sessions_per_user == 4
    assert settings.enforce_session_liveness is True


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.two_factor_max_attempts == 3
    assert settings.two_factor_resend_interval_seconds == 60
    assert settings.session_max_age_days == 30
    assert settings.token_ttl_days == 30
    assert settings.enforce_session_liveness is False


def test_blank_redis_url_is_none(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "   ")
    assert Settings.from_env().redis_url is None


def test_cors_origins_split(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,,")
    assert Settings.from_env().cors_allow_origins == ["https://a.example", "https://b.example"]


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("TWO_FACTOR_MAX_ATTEMPTS", "0")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_dotenv_file_is_read(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("EMAIL_FROM_NAME", raising=False)
    (tmp_path / ".env").write_text("EMAIL_FROM_NAME=Campus Mail\n")

    assert Settings.from_env().email_from_name == "Campus Mail"


def test_environment_beats_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("EMAIL_FROM_NAME=Campus Mail\n")
    monkeypatch.setenv("EMAIL_FROM_NAME", "Registrar")

    assert Settings.from_env().email_from_name == "Registrar"


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("DATA_ROOT", str(tmp_path))

    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret

    assert len(first) >= 32
    assert first == second
    assert (tmp_path / ".jwt_secret").read_text() == first


def test_get_settings_is_cached(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("EMAIL_FROM_NAME", "Changed")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().email_from_name == "Changed"


def test_blank_jwt_secret_is_generated(monkeypatch, tmp_path):
    monkeypatch.setenv("JWT_SECRET", "   ")
    monkeypatch.setenv("DATA_ROOT", str(tmp_path))

    settings = Settings.from_env()

    assert settings.jwt_secret == (tmp_path / ".jwt_secret").read_text()


def test_settings_construct_without_jwt_secret(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_ROOT", str(tmp_path))
    assert len(Settings().jwt_secret) >= 32
