import base64
import json
import logging
import time

import pytest

from vendordash.auth import VendorSession
from vendordash.config import DEFAULT_API_BASE, Settings
from vendordash.logging_config import configure_logging, redact


def _jwt(exp: int) -> str:
    def segment(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("ascii").rstrip("=")

    return f"{segment({'alg': 'HS256'})}.{segment({'sub': 'vendor-1', 'exp': exp})}.signature"


def test_session_health_reads_token_expiry():
    exp = int(time.time()) + 3600
    session = VendorSession(_jwt(exp))
    health = session.session_health()

    assert health.authenticated
    assert not health.expired
    assert int(health.expires_at.timestamp()) == exp


def test_session_health_reports_past_expiry():
    session = VendorSession(_jwt(int(time.time()) - 60))
    health = session.session_health()

    assert health.expired
    assert not health.authenticated


def test_mark_expired_notifies_once_and_drops_bearer():
    session = VendorSession("opaque-token")
    calls = []

    def broken():
        raise RuntimeError("handler bug")

    session.on_expired(broken)
    session.on_expired(lambda: calls.append(1))
    session.mark_expired()
    session.mark_expired()

    assert calls == [1]
    assert session.bearer_token() is None

    session.login("fresh-token")
    assert session.bearer_token() == "fresh-token"


def test_login_requires_token():
    with pytest.raises(ValueError):
        VendorSession().login("")


def test_settings_defaults(monkeypatch):
    for name in ("VENDORDASH_API_BASE", "VENDORDASH_HTTP_TIMEOUT", "VENDORDASH_READ_RETRIES", "GATEWAY_KEY_ID"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.load_from_env()

    assert settings.api_base == DEFAULT_API_BASE
    assert settings.http_timeout == 10.0
    assert settings.read_retries == 1
    assert settings.gateway_key_id == ""


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("VENDORDASH_API_BASE", "https://staging.example/api/vendor/")
    monkeypatch.setenv("VENDORDASH_HTTP_TIMEOUT", "not-a-number")
    monkeypatch.setenv("VENDORDASH_READ_RETRIES", "3")
    monkeypatch.setenv("GATEWAY_KEY_ID", " rzp_live_key ")
    monkeypatch.setenv("GATEWAY_CURRENCY", "usd")
    settings = Settings.load_from_env()

    assert settings.api_base == "https://staging.example/api/vendor"
    assert settings.http_timeout == 10.0
    assert settings.read_retries == 3
    assert settings.gateway_key_id == "rzp_live_key"
    assert settings.currency == "USD"


def test_redact_and_logging_setup():
    assert redact("sig_abcdefghijkl") == "sig_ab***"
    assert redact("short") == "***"

    configure_logging("DEBUG")
    configure_logging("INFO")
    root = logging.getLogger()
    marked = [handler for handler in root.handlers if getattr(handler, "_vendordash", False)]
    assert len(marked) == 1
