# app/core/errors.py
"""
Domain errors raised by the auth flow.

Routes never build HTTP responses for these by hand: ``app.main`` registers a
single handler that renders ``{"error", "message", "details"}`` from the
attributes below.
"""
from __future__ import annotations

from typing import Any


class AuthError(Exception):
    code = "HTTP_ERROR"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class NotFoundError(AuthError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "User not found"


class AlreadyExistsError(AuthError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Email already registered"


class UnauthorizedError(AuthError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Invalid email or password"


class BearerAuthError(UnauthorizedError):
    """Missing or unusable access token on a Bearer-protected route."""

    default_message = "Could not validate credentials"

    @property
    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class InvalidTokenError(AuthError):
    code = "INVALID_TOKEN"
    status_code = 400
    default_message = "Invalid or expired token"


class RateLimitedError(AuthError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, remaining_seconds: int, message: str | None = None) -> None:
        self.remaining_seconds = max(1, int(remaining_seconds))
        super().__init__(message, details={"remaining_seconds": self.remaining_seconds})

    @property
    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.remaining_seconds)}


class CaptchaRequiredError(AuthError):
    code = "CAPTCHA_REQUIRED"
    status_code = 428
    default_message = "CAPTCHA verification required"


class UnverifiedAccountError(AuthError):
    code = "EMAIL_NOT_VERIFIED"
    status_code = 403
    default_message = "Account is not verified"

    def __init__(self, verification_token: str, remaining_cooldown: int | None = None) -> None:
        self.verification_token = verification_token
        self.remaining_cooldown = remaining_cooldown
        super().__init__(
            details={
                "verification_token": verification_token,
                "remaining_cooldown": remaining_cooldown,
            }
        )


class PasswordPolicyError(AuthError):
    code = "WEAK_PASSWORD"
    status_code = 400
    default_message = "Password does not meet requirements."

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__(details={"code": self.code, "violations": violations})


class StorageError(AuthError):
    """Backing-store failure. The original exception is chained, never rendered."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal server error"
