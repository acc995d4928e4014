"""
Outbound email for auth notifications.

EMAIL_PROVIDER picks the transport: ``resend`` (default) or ``ses``. With
EMAIL_ENABLED=false nothing leaves the process, which is what local dev and
the test suite run with.
"""
from __future__ import annotations

import logging
from html import escape as html_escape
from typing import Callable, Optional

import boto3
import resend
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailNotConfiguredError(RuntimeError):
    pass


class EmailDeliveryError(RuntimeError):
    """The provider is configured but refused or failed the send."""


def _sender() -> str:
    if not settings.FROM_EMAIL:
        raise EmailNotConfiguredError("FROM_EMAIL is not set")
    return settings.FROM_EMAIL


def _ses_failure_reason(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return (exc.response or {}).get("Error", {}).get("Code", "ClientError")
    return type(exc).__name__


def _deliver_via_ses(to_email: str, subject: str, text: str, html: Optional[str]) -> Optional[str]:
    region = (settings.AWS_REGION or "").strip()
    if not region:
        raise EmailNotConfiguredError("AWS_REGION is not set (required for SES)")

    body = {"Text": {"Data": text, "Charset": "UTF-8"}}
    if html:
        body["Html"] = {"Data": html, "Charset": "UTF-8"}

    try:
        res = boto3.client("ses", region_name=region).send_email(
            Source=_sender(),
            Destination={"ToAddresses": [to_email]},
            Message={"Subject": {"Data": subject, "Charset": "UTF-8"}, "Body": body},
        )
    except (ClientError, BotoCoreError) as e:
        raise EmailDeliveryError(f"SES send failed: {_ses_failure_reason(e)}") from e

    return res.get("MessageId")


def _deliver_via_resend(to_email: str, subject: str, text: str, html: Optional[str]) -> Optional[str]:
    api_key = (settings.RESEND_API_KEY or "").strip()
    if not api_key:
        raise EmailNotConfiguredError("RESEND_API_KEY is not set")

    resend.api_key = api_key
    try:
        res = resend.Emails.send(
            {
                "from": _sender(),
                "to": [to_email],
                "subject": subject,
                "text": text,
                "html": html or f"<pre>{html_escape(text)}</pre>",
            }
        )
    except Exception as e:  # noqa: BLE001 - the SDK raises its own error hierarchy
        raise EmailDeliveryError(f"Resend send failed: {e}") from e

    if not isinstance(res, dict):
        return None
    if res.get("error"):
        raise EmailDeliveryError(f"Resend API error: {res['error']}")
    msg_id = res.get("id")
    return msg_id.strip() if isinstance(msg_id, str) and msg_id.strip() else None


_PROVIDERS: dict[str, Callable[[str, str, str, Optional[str]], Optional[str]]] = {
    "resend": _deliver_via_resend,
    "ses": _deliver_via_ses,
}


def send_email(to_email: str, subject: str, body: str, *, html: Optional[str] = None) -> Optional[str]:
    """Send one message and return the provider message id (None when delivery is disabled)."""
    if not settings.EMAIL_ENABLED:
        logger.info("EMAIL_ENABLED=false; not sending to=%s subject=%r", to_email, subject)
        return None

    provider = (settings.EMAIL_PROVIDER or "resend").strip().lower()
    deliver = _PROVIDERS.get(provider)
    if deliver is None:
        raise EmailNotConfiguredError(f"Unsupported EMAIL_PROVIDER={provider!r} (expected one of: {', '.join(_PROVIDERS)})")

    msg_id = deliver(to_email, subject, body, html)
    logger.info("Email sent: provider=%s to=%s msg_id=%s", provider, to_email, msg_id)
    return msg_id
