import os

import pytest

from env_validation import EnvironmentError, get_env_bool, get_env_int, validate_environment


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    # Empty counts as unset, and monkeypatch restores the defaults the validator writes.
    monkeypatch.setenv("DB_PATH", "")
    monkeypatch.setenv("DUE_POLICY", "")
    for var in (
        "AUTH_CODE_TTL_SECONDS",
        "SESSION_TTL_DAYS",
        "SMTP_PORT",
        "SMS_API_URL",
        "BOT_API_URL",
        "SMTP_HOST",
        "SMS_API_ID",
        "BOT_TOKEN",
    ):
        monkeypatch.delenv(var, raising=False)


def test_defaults_are_applied(monkeypatch, caplog):
    validate_environment()

    assert os.environ["DB_PATH"] == "data.db"
    assert os.environ["DUE_POLICY"] == "mastery"
    assert "BOT_TOKEN" in caplog.text


def test_unknown_due_policy_is_rejected(monkeypatch):
    monkeypatch.setenv("DUE_POLICY", "lunar")
    with pytest.raises(EnvironmentError):
        validate_environment()


@pytest.mark.parametrize("value", ["zero", "0", "-5"])
def test_ttl_must_be_positive_integer(monkeypatch, value):
    monkeypatch.setenv("DUE_POLICY", "date")
    monkeypatch.setenv("AUTH_CODE_TTL_SECONDS", value)
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_provider_urls_must_be_http(monkeypatch):
    monkeypatch.setenv("DUE_POLICY", "mastery")
    monkeypatch.setenv("SMS_API_URL", "ftp://sms.example")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("FLAG", "Yes")
    monkeypatch.setenv("NUMBER", "12")
    monkeypatch.setenv("BROKEN", "twelve")

    assert get_env_bool("FLAG") is True
    assert get_env_bool("MISSING", default=True) is True
    assert get_env_int("NUMBER", 3) == 12
    assert get_env_int("BROKEN", 3) == 3
