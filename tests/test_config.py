from datetime import timezone

import pytest
from pydantic import ValidationError

from sessionforge.config import Settings, get_settings, reset_settings_cache

SECRET = "s" * 40


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 14 * 24 * 60
    assert settings.clock_skew_seconds == 0
    assert settings.password_min_length == 10
    assert settings.default_roles == ["user"]
    assert settings.allowed_roles == []
    assert settings.jwt_retiring_keys == []


@pytest.mark.parametrize("secret", [None, "", "too-short"])
def test_jwt_secret_required(secret):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=secret)


def test_missing_secret_fails_without_explicit_value():
    with pytest.raises(ValidationError):
        Settings()


@pytest.mark.parametrize(
    "field,value",
    [
        ("access_token_ttl_minutes", 0),
        ("refresh_token_ttl_minutes", -5),
        ("clock_skew_seconds", -1),
        ("password_min_character_classes", 5),
        ("login_rate_limit_per_minute", 0),
    ],
)
def test_out_of_range_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: value})


def test_password_bounds_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, password_min_length=20, password_max_length=12)


def test_roles_parse_from_csv():
    settings = Settings(jwt_secret=SECRET, allowed_roles=" user, Manager ,", default_roles="user")
    assert settings.allowed_roles == ["user", "Manager"]


def test_default_roles_must_be_assignable():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, allowed_roles="Manager", default_roles="user")


def test_retiring_keys_parse_from_json():
    settings = Settings(
        jwt_secret=SECRET,
        jwt_retiring_keys='[{"kid": "old", "secret": "' + "o" * 40 + '", "retire_at": "2026-04-01T00:00:00"}]',
    )
    key = settings.jwt_retiring_keys[0]
    assert key.kid == "old"
    assert key.retire_at.tzinfo == timezone.utc


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"kid": "old"}',
        '[{"kid": "old", "secret": "short", "retire_at": "2026-04-01T00:00:00"}]',
        '[{"kid": "primary", "secret": "' + "o" * 40 + '", "retire_at": "2026-04-01T00:00:00"}]',
    ],
)
def test_bad_retiring_keys_rejected(raw):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, jwt_retiring_keys=raw)


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("DEFAULT_ROLES", "reader,writer")
    monkeypatch.setenv("CLOCK_SKEW_SECONDS", "10")
    reset_settings_cache()
    try:
        settings = get_settings()
        assert settings.access_token_ttl_minutes == 5
        assert settings.default_roles == ["reader", "writer"]
        assert settings.clock_skew_seconds == 10
        assert get_settings() is settings
    finally:
        reset_settings_cache()
