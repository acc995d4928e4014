from __future__ import annotations

import boto3
import pytest
from botocore.stub import Stubber

from app.core import config as app_config
from app.services import email as email_service
from app.services import notifications
from app.services.notifications import EmailNotifier, NotificationKind


def _capture_send(monkeypatch):
    calls = []

    def _fake_send(to_email, subject, body):
        calls.append({"to": to_email, "subject": subject, "body": body})
        return "msg_test_123"

    monkeypatch.setattr(notifications, "send_email", _fake_send)
    return calls


def test_verification_code_email(monkeypatch):
    calls = _capture_send(monkeypatch)

    sent = EmailNotifier().send("seller@example.com", NotificationKind.VERIFICATION_CODE, {"code": "042917", "expires_minutes": 10})

    assert sent is True
    assert calls[0]["to"] == "seller@example.com"
    assert "042917" in calls[0]["body"]
    assert "10 minutes" in calls[0]["body"]


def test_password_reset_email_links_to_frontend(monkeypatch):
    calls = _capture_send(monkeypatch)
    monkeypatch.setattr(app_config.settings, "FRONTEND_BASE_URL", "https://tradegear.example")

    EmailNotifier().send("seller@example.com", NotificationKind.PASSWORD_RESET, {"token": "abc-123", "expires_minutes": 30})

    assert "https://tradegear.example/reset-password?token=abc-123" in calls[0]["body"]


def test_notifier_reports_delivery_failure(monkeypatch):
    def _fail(to_email, subject, body):
        raise email_service.EmailDeliveryError("provider down")

    monkeypatch.setattr(notifications, "send_email", _fail)

    assert EmailNotifier().send("seller@example.com", NotificationKind.VERIFICATION_CODE, {"code": "1", "expires_minutes": 1}) is False


def test_notifier_reports_missing_configuration(monkeypatch):
    def _fail(to_email, subject, body):
        raise email_service.EmailNotConfiguredError("FROM_EMAIL is not set")

    monkeypatch.setattr(notifications, "send_email", _fail)

    assert EmailNotifier().send("seller@example.com", NotificationKind.PASSWORD_RESET, {"token": "t", "expires_minutes": 1}) is False


def test_send_email_noop_when_disabled(monkeypatch):
    monkeypatch.setattr(app_config.settings, "EMAIL_ENABLED", False)

    def _boom(*args):
        raise AssertionError("provider must not be called")

    monkeypatch.setitem(email_service._PROVIDERS, "resend", _boom)
    assert email_service.send_email("to@example.com", "Subject", "Body") is None


def test_send_email_enabled_missing_config(monkeypatch):
    monkeypatch.setattr(app_config.settings, "EMAIL_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "EMAIL_PROVIDER", "resend")
    monkeypatch.setattr(app_config.settings, "RESEND_API_KEY", "")

    with pytest.raises(email_service.EmailNotConfiguredError):
        email_service.send_email("to@example.com", "Subject", "Body")


def test_send_email_rejects_unknown_provider(monkeypatch):
    monkeypatch.setattr(app_config.settings, "EMAIL_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "EMAIL_PROVIDER", "smtp")

    with pytest.raises(email_service.EmailNotConfiguredError):
        email_service.send_email("to@example.com", "Subject", "Body")


def test_send_email_via_resend(monkeypatch):
    monkeypatch.setattr(app_config.settings, "EMAIL_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "EMAIL_PROVIDER", "resend")
    monkeypatch.setattr(app_config.settings, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(app_config.settings, "FROM_EMAIL", "no-reply@tradegear.example")
    payloads = []

    def _fake_send(payload):
        payloads.append(payload)
        return {"id": "re_msg_1"}

    monkeypatch.setattr(email_service.resend.Emails, "send", _fake_send)

    assert email_service.send_email("to@example.com", "Subject", "Body") == "re_msg_1"
    assert payloads[0]["to"] == ["to@example.com"]
    assert payloads[0]["from"] == "no-reply@tradegear.example"


def test_send_email_via_ses(monkeypatch):
    monkeypatch.setattr(app_config.settings, "EMAIL_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "EMAIL_PROVIDER", "ses")
    monkeypatch.setattr(app_config.settings, "AWS_REGION", "us-east-1")
    monkeypatch.setattr(app_config.settings, "FROM_EMAIL", "no-reply@tradegear.example")

    client = boto3.client(
        "ses",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    stubber = Stubber(client)
    stubber.add_response(
        "send_email",
        {"MessageId": "ses-msg-1"},
        {
            "Source": "no-reply@tradegear.example",
            "Destination": {"ToAddresses": ["to@example.com"]},
            "Message": {
                "Subject": {"Data": "Subject", "Charset": "UTF-8"},
                "Body": {"Text": {"Data": "Body", "Charset": "UTF-8"}},
            },
        },
    )
    monkeypatch.setattr(email_service.boto3, "client", lambda *a, **k: client)

    with stubber:
        assert email_service.send_email("to@example.com", "Subject", "Body") == "ses-msg-1"


def test_send_email_ses_rejection_is_delivery_error(monkeypatch):
    monkeypatch.setattr(app_config.settings, "EMAIL_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "EMAIL_PROVIDER", "ses")
    monkeypatch.setattr(app_config.settings, "AWS_REGION", "us-east-1")
    monkeypatch.setattr(app_config.settings, "FROM_EMAIL", "no-reply@tradegear.example")

    client = boto3.client(
        "ses",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    stubber = Stubber(client)
    stubber.add_client_error("send_email", service_error_code="MessageRejected")
    monkeypatch.setattr(email_service.boto3, "client", lambda *a, **k: client)

    with stubber, pytest.raises(email_service.EmailDeliveryError, match="MessageRejected"):
        email_service.send_email("to@example.com", "Subject", "Body")
