"""
Cloudflare Turnstile, consulted only when the rate limiter escalates an
attempt to ``RequiresCaptcha``.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
TURNSTILE_TIMEOUT = 5.0


class TurnstileError(Exception):
    pass


class TurnstileConfigurationError(TurnstileError):
    """TURNSTILE_SECRET_KEY is missing."""


class TurnstileVerificationError(TurnstileError):
    """The token was rejected, or siteverify could not be reached."""


def verify_turnstile_token(token: str, *, remote_ip: str | None = None) -> dict[str, Any]:
    """Check ``token`` against siteverify and return Cloudflare's payload on success."""
    secret = settings.TURNSTILE_SECRET_KEY
    if not secret:
        raise TurnstileConfigurationError("Turnstile secret key is not configured.")

    candidate = (token or "").strip()
    if not candidate:
        raise TurnstileVerificationError("Missing CAPTCHA token.")

    form = {"secret": secret, "response": candidate}
    if remote_ip:
        form["remoteip"] = remote_ip

    try:
        response = httpx.post(TURNSTILE_VERIFY_URL, data=form, timeout=TURNSTILE_TIMEOUT)
        if response.status_code >= 500:
            raise TurnstileVerificationError(f"Turnstile unavailable (HTTP {response.status_code}).")
        payload = response.json()
    except httpx.HTTPError as exc:
        raise TurnstileVerificationError("Unable to reach Turnstile.") from exc
    except ValueError as exc:
        raise TurnstileVerificationError("Turnstile returned a non-JSON response.") from exc

    if payload.get("success") is not True:
        codes = ", ".join(str(c) for c in payload.get("error-codes") or []) or "unknown"
        raise TurnstileVerificationError(f"CAPTCHA verification failed: {codes}")
    return payload


class TurnstileCaptchaVerifier:
    def __init__(self, remote_ip: str | None = None) -> None:
        self.remote_ip = remote_ip

    def verify(self, token: str) -> bool:
        try:
            verify_turnstile_token(token, remote_ip=self.remote_ip)
        except TurnstileConfigurationError:
            logger.error("CAPTCHA escalation requested but TURNSTILE_SECRET_KEY is not configured")
            return False
        except TurnstileVerificationError as exc:
            logger.warning("CAPTCHA rejected: ip=%s reason=%s", self.remote_ip or "-", exc)
            return False
        return True


def get_captcha_verifier(remote_ip: str | None = None) -> TurnstileCaptchaVerifier | None:
    """None when CAPTCHA_ENABLED is off, which turns escalation into a hard throttle."""
    if not settings.CAPTCHA_ENABLED:
        return None
    return TurnstileCaptchaVerifier(remote_ip=remote_ip)
