from __future__ import annotations

from app.core import config as app_config
from app.services.turnstile import TurnstileCaptchaVerifier

EMAIL = "seller@example.com"
PASSWORD = "Str0ng!Marketplace"


def _assert_error_shape(res, *, error: str):
    data = res.json()
    assert isinstance(data, dict)
    assert data.get("error") == error
    assert isinstance(data.get("message"), str) and data["message"]


def _register_and_verify(client, notifier, email=EMAIL):
    res = client.post("/auth/register", json={"email": email, "password": PASSWORD, "nickname": "gearhead"})
    assert res.status_code == 200
    code = notifier.last("verification_code")["code"]
    res = client.post("/auth/verify-email", json={"email": email, "code": code})
    assert res.status_code == 200
    return res


def _login(client, email=EMAIL, password=PASSWORD):
    res = client.post("/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_register_verify_login_refresh_logout(client, notifier):
    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD, "nickname": "gearhead"})
    assert res.status_code == 200
    body = res.json()
    assert body["email"] == EMAIL
    assert body["notification_sent"] is True
    assert body["verification_token"]

    code = notifier.last("verification_code")["code"]
    res = client.post("/auth/verify-email", json={"email": EMAIL, "code": code})
    assert res.status_code == 200
    assert res.json()["verified"] is True

    login = _login(client)
    assert login["email"] == EMAIL
    assert login["nickname"] == "gearhead"
    assert login["verified"] is True
    assert login["token"] and login["refresh_token"] and login["expires_at"]

    res = client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert res.status_code == 200
    rotated = res.json()
    assert rotated["refresh_token"] != login["refresh_token"]

    res = client.post("/auth/logout", json={"refresh_token": rotated["refresh_token"]})
    assert res.status_code == 200
    assert res.json()["message"] == "Logged out"

    res = client.post("/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_refresh_replay_is_401(client, notifier):
    _register_and_verify(client, notifier)
    login = _login(client)
    assert client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]}).status_code == 200

    res = client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_register_conflict_is_409(client, notifier):
    _register_and_verify(client, notifier)
    res = client.post("/auth/register", json={"email": EMAIL.upper(), "password": PASSWORD})
    assert res.status_code == 409
    _assert_error_shape(res, error="CONFLICT")


def test_login_unverified_is_403_with_resume_token(client):
    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
    token = res.json()["verification_token"]

    res = client.post("/auth/login", json={"email": EMAIL, "password": PASSWORD})
    assert res.status_code == 403
    _assert_error_shape(res, error="EMAIL_NOT_VERIFIED")
    details = res.json()["details"]
    assert details["verification_token"] == token
    assert details["remaining_cooldown"] == app_config.settings.VERIFICATION_RESEND_COOLDOWN_SECONDS


def test_login_bad_password_is_401(client, notifier):
    _register_and_verify(client, notifier)
    res = client.post("/auth/login", json={"email": EMAIL, "password": "Wr0ng!Password"})
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_verify_unknown_email_is_404(client):
    res = client.post("/auth/verify-email", json={"email": "nobody@example.com", "code": "123456"})
    assert res.status_code == 404
    _assert_error_shape(res, error="NOT_FOUND")


def test_verify_wrong_code_is_400_invalid_token(client):
    client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
    res = client.post("/auth/verify-email", json={"email": EMAIL, "code": "abcdef"})
    assert res.status_code == 400
    _assert_error_shape(res, error="INVALID_TOKEN")


def test_resend_cooldown_is_429_with_retry_after(client):
    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
    token = res.json()["verification_token"]

    res = client.post("/auth/resend-verification", json={"verification_token": token})
    assert res.status_code == 429
    _assert_error_shape(res, error="RATE_LIMITED")
    retry_after = int(res.headers["Retry-After"])
    assert retry_after > 0
    assert res.json()["details"]["remaining_seconds"] == retry_after


def test_resend_after_cooldown_sends_new_code(client, notifier, frozen_clock):
    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
    token = res.json()["verification_token"]
    frozen_clock.advance(seconds=61)

    res = client.post("/auth/resend-verification", json={"verification_token": token})
    assert res.status_code == 200
    assert notifier.count("verification_code") == 2

    res = client.post("/auth/resend-verification", json={"verification_token": token})
    assert res.status_code == 400
    _assert_error_shape(res, error="INVALID_TOKEN")


def test_verification_info(client, frozen_clock):
    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
    token = res.json()["verification_token"]

    res = client.get("/auth/verification-info", params={"verification_token": token})
    assert res.status_code == 200
    body = res.json()
    assert body["email"] == EMAIL
    assert body["sent_at"]
    assert body["remaining_cooldown"] == app_config.settings.VERIFICATION_RESEND_COOLDOWN_SECONDS

    res = client.get("/auth/verification-info", params={"verification_token": "unknown"})
    assert res.status_code == 400


def test_logout_all_requires_bearer(client, notifier):
    res = client.post("/auth/logout-all")
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")
    assert res.headers.get("WWW-Authenticate") == "Bearer"

    _register_and_verify(client, notifier)
    first = _login(client)
    second = _login(client)

    res = client.post("/auth/logout-all", headers={"Authorization": f"Bearer {first['token']}"})
    assert res.status_code == 200
    assert res.json()["message"] == "Logged out of 2 sessions"
    for login in (first, second):
        assert client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]}).status_code == 401


def test_logout_all_rejects_refresh_token_as_bearer(client, notifier):
    _register_and_verify(client, notifier)
    login = _login(client)
    res = client.post("/auth/logout-all", headers={"Authorization": f"Bearer {login['refresh_token']}"})
    assert res.status_code == 401


def test_forgot_password_is_indistinguishable(client, notifier):
    _register_and_verify(client, notifier)

    known = client.post("/auth/forgot-password", json={"email": EMAIL})
    unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    # Delivered through BackgroundTasks after the response.
    assert notifier.count("password_reset") == 1


def test_reset_password_flow(client, notifier):
    _register_and_verify(client, notifier)
    login = _login(client)
    client.post("/auth/forgot-password", json={"email": EMAIL})
    token = notifier.last("password_reset")["token"]

    res = client.get("/auth/reset-password/verify", params={"token": token})
    assert res.json() == {"valid": True, "email": EMAIL}

    res = client.post("/auth/reset-password", json={"reset_token": token, "new_password": "N3w!Gear-Locker"})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["email"] == EMAIL

    # Sessions issued before the reset are gone.
    res = client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert res.status_code == 401

    res = client.get("/auth/reset-password/verify", params={"token": token})
    assert res.json()["valid"] is False

    res = client.post("/auth/reset-password", json={"reset_token": token, "new_password": "N3w!Gear-Locker"})
    assert res.status_code == 400
    _assert_error_shape(res, error="INVALID_TOKEN")

    _login(client, password="N3w!Gear-Locker")


def test_forgot_password_escalates_to_captcha(client, notifier, monkeypatch):
    app_config.settings.CAPTCHA_ENABLED = True
    monkeypatch.setattr(TurnstileCaptchaVerifier, "verify", lambda self, token: token == "human")

    for _ in range(app_config.settings.FORGOT_PASSWORD_LIMIT):
        assert client.post("/auth/forgot-password", json={"email": EMAIL}).status_code == 200

    res = client.post("/auth/forgot-password", json={"email": EMAIL})
    assert res.status_code == 428
    _assert_error_shape(res, error="CAPTCHA_REQUIRED")

    res = client.post("/auth/forgot-password", json={"email": EMAIL, "captcha_token": "bot"})
    assert res.status_code == 428

    res = client.post("/auth/forgot-password", json={"email": EMAIL, "captcha_token": "human"})
    assert res.status_code == 200

    # Past the captcha ceiling nothing gets through until the window resets.
    for _ in range(app_config.settings.FORGOT_PASSWORD_CAPTCHA_LIMIT):
        client.post("/auth/forgot-password", json={"email": EMAIL, "captcha_token": "human"})
    res = client.post("/auth/forgot-password", json={"email": EMAIL, "captcha_token": "human"})
    assert res.status_code == 429
    assert int(res.headers["Retry-After"]) > 0


def test_request_validation_error_shape(client):
    res = client.post("/auth/login", json={"email": "not-an-email"})
    assert res.status_code == 422
    _assert_error_shape(res, error="VALIDATION_ERROR")
    assert isinstance(res.json()["details"]["errors"], list)


def test_register_nickname_fits_column(client):
    # users.nickname is VARCHAR(50): longer values are rejected before they reach the database.
    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD, "nickname": "n" * 51})
    assert res.status_code == 422
    _assert_error_shape(res, error="VALIDATION_ERROR")

    res = client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD, "nickname": "n" * 50})
    assert res.status_code == 200


def test_unknown_route_uses_error_shape(client):
    res = client.get("/auth/nope")
    assert res.status_code == 404
    _assert_error_shape(res, error="NOT_FOUND")
