from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlencode

from app.core.config import settings
from app.services.email import EmailDeliveryError, EmailNotConfiguredError, send_email

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    VERIFICATION_CODE = "verification_code"
    PASSWORD_RESET = "password_reset"


class Notifier(Protocol):
    def send(self, destination: str, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        ...


def _render_verification_code(payload: dict[str, Any]) -> tuple[str, str]:
    subject = "Your TradeGear verification code"
    body = "\n".join(
        [
            "Welcome to TradeGear!",
            "",
            f"Your verification code is: {payload['code']}",
            f"It expires in {payload['expires_minutes']} minutes.",
            "",
            "If you did not create this account, you can ignore this email.",
        ]
    )
    return subject, body


def _render_password_reset(payload: dict[str, Any]) -> tuple[str, str]:
    reset_link = f"{settings.FRONTEND_BASE_URL}/reset-password?{urlencode({'token': payload['token']})}"
    subject = "Reset your TradeGear password"
    body = "\n".join(
        [
            "We received a request to reset your password.",
            "",
            "Choose a new password using the link below:",
            reset_link,
            "",
            f"The link expires in {payload['expires_minutes']} minutes.",
            "If you did not request this, you can ignore this email.",
        ]
    )
    return subject, body


_TEMPLATES = {
    NotificationKind.VERIFICATION_CODE: _render_verification_code,
    NotificationKind.PASSWORD_RESET: _render_password_reset,
}


class EmailNotifier:
    """
    Delivers auth notifications by email. Delivery failures are logged and
    reported as ``False``; they never abort the calling flow.
    """

    def send(self, destination: str, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        subject, body = _TEMPLATES[kind](payload)
        try:
            msg_id = send_email(to_email=destination, subject=subject, body=body)
        except EmailNotConfiguredError as e:
            logger.error("Email delivery not configured (%s): kind=%s to=%s", e, kind.value, destination)
            return False
        except EmailDeliveryError as e:
            logger.warning("Email delivery failed: kind=%s to=%s error=%s", kind.value, destination, e)
            return False

        logger.info(
            "Notification sent: kind=%s to=%s provider=%s msg_id=%s",
            kind.value,
            destination,
            settings.EMAIL_PROVIDER or "resend",
            msg_id,
        )
        return True
