import pytest
from pydantic import ValidationError

from realmauth.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)
    assert settings.verification_token_bytes == 150
    assert settings.unique_hash_bytes == 64
    assert settings.verification_token_ttl_hours == 24
    assert settings.password_reset_ttl_minutes == 120
    assert settings.email_change_cooldown_days == 7
    assert (settings.lockout_ban_threshold, settings.lockout_permanent_threshold) == (4, 9)
    assert settings.admin_secret is None


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("SESSION_TTL_MINUTES", "15")
    monkeypatch.setenv("ALPHA_ACCESS_PURPOSE", "closed beta")
    monkeypatch.setenv("MAINTENANCE_ENABLED", "false")
    settings = Settings.from_env()
    assert settings.session_ttl_minutes == 15
    assert settings.alpha_access_purpose == "closed beta"
    assert settings.maintenance_enabled is False


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("INVITE_MAX_BATCH", "10")
    reset_settings_cache()
    assert get_settings().invite_max_batch == 10
    reset_settings_cache()


@pytest.mark.parametrize(
    "overrides",
    [
        {"verification_token_bytes": 32},
        {"reset_token_bytes": 149},
        {"unique_hash_bytes": 16},
        {"invite_code_bytes": 8},
        {"password_min_length": 6},
        {"lockout_ban_threshold": 5, "lockout_permanent_threshold": 5},
    ],
)
def test_insecure_values_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **overrides)


def test_settings_are_frozen():
    settings = Settings(jwt_secret="x" * 40)
    with pytest.raises(ValidationError):
        settings.admin_secret = "changed"


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
