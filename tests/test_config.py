"""Settings loading and validation."""

import pytest
from pydantic import ValidationError

from harbinger.config import Settings, get_settings, reset_settings_cache

SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.jwt_issuer == "Project Harbinger"
    assert settings.token_ttl_hours == 24
    assert settings.blacklist_floor_seconds == 300
    assert settings.profile_cache_ttl_seconds == 300
    assert settings.redis_operation_timeout == 5.0
    assert settings.server_port == 8080


@pytest.mark.parametrize("secret", ["", "short-secret"])
def test_weak_secret_rejected(secret):
    with pytest.raises(ValidationError) as excinfo:
        Settings(jwt_secret=secret)
    if secret:
        assert secret not in str(excinfo.value)


@pytest.mark.parametrize(
    "field", ["token_ttl_hours", "blacklist_floor_seconds", "profile_cache_ttl_seconds", "session_scan_count"]
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: 0})


@pytest.mark.parametrize("field", ["redis_operation_timeout", "logout_deadline_seconds"])
def test_non_positive_timeout_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: 0})


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("TOKEN_TTL_HOURS", "2")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")

    settings = Settings.from_env()
    assert settings.token_ttl_hours == 2
    assert settings.use_memory_store is True


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text(f"JWT_SECRET={SECRET}\nJWT_ISSUER=Staging Harbinger\n")

    settings = Settings.from_env()
    assert settings.jwt_secret == SECRET
    assert settings.jwt_issuer == "Staging Harbinger"


def test_environment_wins_over_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("SERVER_PORT", "9090")
    (tmp_path / ".env").write_text("SERVER_PORT=7070\n")

    assert Settings.from_env().server_port == 9090


def test_get_settings_is_cached_until_reset(monkeypatch):
    monkeypatch.setenv("SERVER_PORT", "9001")
    first = get_settings()
    monkeypatch.setenv("SERVER_PORT", "9002")
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().server_port == 9002


def test_repr_hides_secret():
    assert SECRET not in repr(Settings(jwt_secret=SECRET))
