from __future__ import annotations

import httpx
import pytest

from app.services import turnstile
from app.services.turnstile import (
    TurnstileCaptchaVerifier,
    TurnstileConfigurationError,
    TurnstileVerificationError,
    get_captcha_verifier,
    verify_turnstile_token,
)


class _DummyResponse:
    def __init__(self, payload: dict, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self) -> dict:
        return self._payload


def test_verify_turnstile_token_success(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "secret")
    seen = {}

    def _post(url, data, timeout):
        seen.update(data)
        return _DummyResponse({"success": True})

    monkeypatch.setattr(turnstile.httpx, "post", _post)

    payload = verify_turnstile_token("token-123", remote_ip="1.1.1.1")
    assert payload["success"] is True
    assert seen == {"secret": "secret", "response": "token-123", "remoteip": "1.1.1.1"}


def test_verify_turnstile_token_failure_lists_error_codes(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "secret")
    monkeypatch.setattr(
        turnstile.httpx,
        "post",
        lambda *a, **k: _DummyResponse({"success": False, "error-codes": ["timeout-or-duplicate"]}),
    )

    with pytest.raises(TurnstileVerificationError, match="timeout-or-duplicate"):
        verify_turnstile_token("bad-token")


def test_verify_turnstile_token_network_error(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "secret")

    def _raise(*args, **kwargs):
        raise httpx.TimeoutException("timeout")

    monkeypatch.setattr(turnstile.httpx, "post", _raise)

    with pytest.raises(TurnstileVerificationError):
        verify_turnstile_token("token")


def test_verify_turnstile_token_configuration_missing(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "")

    with pytest.raises(TurnstileConfigurationError):
        verify_turnstile_token("token")


def test_captcha_verifier_reports_bool(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "secret")
    monkeypatch.setattr(turnstile.httpx, "post", lambda *a, **k: _DummyResponse({"success": True}))
    assert TurnstileCaptchaVerifier("1.1.1.1").verify("token") is True

    monkeypatch.setattr(turnstile.httpx, "post", lambda *a, **k: _DummyResponse({"success": False}))
    assert TurnstileCaptchaVerifier().verify("token") is False
    assert TurnstileCaptchaVerifier().verify("") is False


def test_captcha_verifier_without_secret_rejects(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "")
    assert TurnstileCaptchaVerifier().verify("token") is False


def test_get_captcha_verifier_respects_flag(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "CAPTCHA_ENABLED", False)
    assert get_captcha_verifier("1.1.1.1") is None

    monkeypatch.setattr(turnstile.settings, "CAPTCHA_ENABLED", True)
    verifier = get_captcha_verifier("1.1.1.1")
    assert isinstance(verifier, TurnstileCaptchaVerifier)
    assert verifier.remote_ip == "1.1.1.1"


def test_verify_turnstile_token_server_error(monkeypatch):
    monkeypatch.setattr(turnstile.settings, "TURNSTILE_SECRET_KEY", "secret")
    monkeypatch.setattr(turnstile.httpx, "post", lambda *a, **k: _DummyResponse({}, status_code=503))

    with pytest.raises(TurnstileVerificationError, match="503"):
        verify_turnstile_token("token")
