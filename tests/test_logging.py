from sessionforge.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
    short_key,
)


def test_secrets_are_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "Sw0rdFish!",
            "refresh_token": "abc",
            "authorization": "Bearer xyz",
            "principal_id": "p-1",
        },
    )
    assert event["password"] == "[REDACTED]"
    assert event["refresh_token"] == "[REDACTED]"
    assert event["authorization"] == "[REDACTED]"
    assert event["principal_id"] == "p-1"


def test_identifiers_are_masked():
    event = _redact_pii(None, "info", {"login": "alice@example.com", "email": "abc"})
    assert event["login"] == "al***om"
    assert event["email"] == "abc"


def test_short_key():
    assert short_key("0123456789abcdef") == "0123456789ab"
    assert short_key(None) is None


def test_correlation_id_roundtrip():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated and generated != "req-1"


def test_sanitize_error_message():
    cleaned = sanitize_error_message("password=hunter2 failed in /var/lib/postgres/data")
    assert "hunter2" not in cleaned
    assert "/var/lib" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 500
