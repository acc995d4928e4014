# app/services/auth_flow.py
"""
Auth flow controller: register -> verify -> login -> refresh -> reset.

One ``AuthFlow`` is built per request around that request's session. It
enforces the preconditions of each transition, consults the rate limiter, and
commits every state change before returning so the caller never observes a
half-applied transition. Expected outcomes are raised as ``app.core.errors``
domain errors; database failures surface as ``StorageError``.
"""
from __future__ import annotations

import functools
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_utc, system_clock
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.errors import (
    AlreadyExistsError,
    AuthError,
    CaptchaRequiredError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    StorageError,
    UnauthorizedError,
    UnverifiedAccountError,
)
from app.core.password_policy import ensure_strong_password
from app.core.security import hash_password, hash_secret, secret_matches, verify_password
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.services import refresh_tokens, users
from app.services.notifications import EmailNotifier, NotificationKind, Notifier
from app.services.rate_limiter import (
    CaptchaVerifier,
    RateLimiter,
    RequiresCaptcha,
    Throttled,
    evaluate_attempt,
    get_rate_limiter,
)
from app.services.token_issuer import IssuedVerification, TokenIssuer

logger = logging.getLogger(__name__)

FORGOT_PASSWORD_ACK = "If that email is registered, a password reset link has been sent."


@dataclass(frozen=True)
class RegisterResult:
    message: str
    email: str
    verification_token: str | None
    notification_sent: bool


@dataclass(frozen=True)
class VerifyResult:
    message: str
    verified: bool = True


@dataclass(frozen=True)
class ResendResult:
    message: str
    notification_sent: bool


@dataclass(frozen=True)
class LoginResult:
    user_id: str
    email: str
    nickname: str | None
    verified: bool
    token: str
    refresh_token: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionTokens:
    token: str
    refresh_token: str
    expires_at: datetime


@dataclass(frozen=True)
class ResetResult:
    success: bool
    message: str
    email: str | None = None


@dataclass(frozen=True)
class ResetTokenStatus:
    valid: bool
    email: str | None = None


@dataclass(frozen=True)
class VerificationInfo:
    email: str
    sent_at: datetime | None
    remaining_cooldown: int | None


def _guard_storage(fn):
    """Roll back and re-raise backing-store failures as a generic StorageError."""

    @functools.wraps(fn)
    def wrapper(self: "AuthFlow", *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except AuthError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Storage failure during %s", fn.__name__)
            raise StorageError() from exc

    return wrapper


class AuthFlow:
    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = system_clock,
        notifier: Notifier | None = None,
        limiter: RateLimiter | None = None,
        captcha_verifier: CaptchaVerifier | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.db = db
        self.session_factory = session_factory
        self.clock = clock
        self.notifier = notifier or EmailNotifier()
        self.limiter = limiter or get_rate_limiter(db)
        self.captcha_verifier = captcha_verifier
        self.issuer = TokenIssuer(db, clock)

    # -----------------------------
    # Helpers
    # -----------------------------
    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError() from exc

    def _check_attempt(
        self,
        route_key: str,
        identifier: str,
        *,
        limit: int,
        window_seconds: int,
        captcha_limit: int = 0,
        captcha_token: str | None = None,
    ) -> None:
        decision = evaluate_attempt(
            self.limiter,
            identifier=identifier,
            route_key=route_key,
            limit=limit,
            window_seconds=window_seconds,
            captcha_limit=captcha_limit,
            captcha_token=captcha_token,
            captcha_verifier=self.captcha_verifier,
            now=int(self.clock.now().timestamp()),
        )
        if isinstance(decision, Throttled):
            raise RateLimitedError(decision.remaining_seconds)
        if isinstance(decision, RequiresCaptcha):
            raise CaptchaRequiredError()

    def _remaining_cooldown(self, user: User, now: datetime) -> int:
        sent_at = as_utc(user.verification_sent_at)
        if sent_at is None:
            return 0
        available_at = sent_at + timedelta(seconds=settings.VERIFICATION_RESEND_COOLDOWN_SECONDS)
        return max(0, math.ceil((available_at - now).total_seconds()))

    def _notify(self, destination: str, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        try:
            return bool(self.notifier.send(destination, kind, payload))
        except Exception:  # noqa: BLE001 - delivery must never fail the auth flow
            logger.exception("Notifier raised while sending %s to %s", kind.value, destination)
            return False

    def _deliver_verification_code(self, user_id: str, email: str, issued: IssuedVerification) -> bool:
        sent = self._notify(
            email,
            NotificationKind.VERIFICATION_CODE,
            {"code": issued.code, "expires_minutes": settings.EMAIL_VERIFICATION_CODE_TTL_MINUTES},
        )
        if not sent:
            return False
        # The code is already out: losing the sent_at stamp only weakens the resend cooldown.
        try:
            user = self.db.get(User, user_id)
            if user is not None:
                user.verification_sent_at = self.clock.now()
                self._commit()
        except (SQLAlchemyError, StorageError):
            self.db.rollback()
            logger.exception("Could not record verification send time: user_id=%s", user_id)
        return True

    # -----------------------------
    # Registration / verification
    # -----------------------------
    @_guard_storage
    def register(self, email: str, password: str, nickname: str | None = None) -> RegisterResult:
        email = users.normalize_email(email)
        nickname = (nickname or "").strip() or None
        ensure_strong_password(password, email=email, nickname=nickname)

        if users.get_active_user_by_email(self.db, email) is not None:
            raise AlreadyExistsError()

        now = self.clock.now()
        user = User(
            email=email,
            nickname=nickname,
            password_hash=hash_password(password),
            password_changed_at=now,
            verified=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(user)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # Lost a race against a concurrent registration for the same email.
            self.db.rollback()
            raise AlreadyExistsError() from exc

        issued = self.issuer.issue_verification_code(user)
        user_id = user.id
        self._commit()
        logger.info("User registered: user_id=%s", user_id)

        # The account exists from here on, whatever happens to the email.
        sent = self._deliver_verification_code(user_id, email, issued)
        message = "Registration successful. Please check your email for the verification code."
        if not sent:
            message = "Registration successful, but the verification email could not be sent. Please request a new code."
        return RegisterResult(
            message=message,
            email=email,
            verification_token=issued.token,
            notification_sent=sent,
        )

    @_guard_storage
    def verify_code(self, email: str, code: str) -> VerifyResult:
        email = users.normalize_email(email)
        self._check_attempt(
            "verify_code",
            email,
            limit=settings.VERIFY_CODE_LIMIT,
            window_seconds=settings.VERIFY_CODE_WINDOW_SECONDS,
        )

        user = users.get_active_user_by_email(self.db, email)
        if user is None:
            raise NotFoundError()
        if user.verified:
            return VerifyResult(message="Email already verified")

        now = self.clock.now()
        ticket = user.verification
        if ticket is None or not ticket.is_live(now) or not secret_matches((code or "").strip(), ticket.code_hash):
            raise InvalidTokenError("Invalid or expired verification code")

        user_id = user.id
        if not users.mark_verified_if_code_matches(self.db, user_id=user_id, code_hash=ticket.code_hash, now=now):
            raise InvalidTokenError("Invalid or expired verification code")
        self._commit()

        logger.info("Email verified: user_id=%s", user_id)
        return VerifyResult(message="Email verified successfully. You can now log in.")

    @_guard_storage
    def resend_verification(
        self,
        *,
        verification_token: str | None = None,
        email: str | None = None,
        captcha_token: str | None = None,
    ) -> ResendResult:
        if verification_token:
            user = users.get_user_by_verification_token(self.db, verification_token)
            if user is None:
                raise InvalidTokenError("Invalid verification token")
        elif email:
            user = users.get_active_user_by_email(self.db, email)
            if user is None:
                raise NotFoundError()
        else:
            raise InvalidTokenError("A verification token or email is required")

        if user.verified:
            return ResendResult(message="Email already verified. Please log in.", notification_sent=False)

        cooldown = self._remaining_cooldown(user, self.clock.now())
        if cooldown > 0:
            raise RateLimitedError(cooldown, "Please wait before requesting another verification code")

        user_id, user_email = user.id, user.email
        self._check_attempt(
            "resend_verification",
            user_email,
            limit=settings.RESEND_VERIFICATION_LIMIT,
            window_seconds=settings.RESEND_VERIFICATION_WINDOW_SECONDS,
            captcha_limit=settings.RESEND_VERIFICATION_CAPTCHA_LIMIT,
            captcha_token=captcha_token,
        )

        user = self.db.get(User, user_id)
        issued = self.issuer.issue_verification_code(user)
        self._commit()

        sent = self._deliver_verification_code(user_id, user_email, issued)
        if not sent:
            return ResendResult(message="Verification code could not be delivered. Please try again later.", notification_sent=False)
        return ResendResult(message="Verification code sent.", notification_sent=True)

    @_guard_storage
    def verification_info(self, verification_token: str) -> VerificationInfo:
        user = users.get_user_by_verification_token(self.db, verification_token)
        if user is None:
            raise InvalidTokenError("Invalid verification token")
        cooldown = self._remaining_cooldown(user, self.clock.now())
        return VerificationInfo(
            email=user.email,
            sent_at=as_utc(user.verification_sent_at),
            remaining_cooldown=cooldown or None,
        )

    # -----------------------------
    # Sessions
    # -----------------------------
    @_guard_storage
    def login(self, email: str, password: str) -> LoginResult:
        email = users.normalize_email(email)
        user = users.get_active_user_by_email(self.db, email)

        # Verify even without a user so both paths cost one argon2 check.
        if not verify_password(password or "", user.password_hash if user is not None else None):
            if user is None and users.has_deleted_account(self.db, email):
                raise NotFoundError("Account no longer exists")
            raise UnauthorizedError()

        now = self.clock.now()
        if not user.verified:
            ticket = user.verification
            if ticket is None:
                # Swept while unverified: give the client a fresh handle to resume with.
                verification_token = self.issuer.issue_verification_code(user).token
                self._commit()
                user = self.db.get(User, user.id)
            else:
                verification_token = ticket.token
            cooldown = self._remaining_cooldown(user, now)
            raise UnverifiedAccountError(verification_token, cooldown or None)

        access = self.issuer.issue_access_token(user)
        refresh = self.issuer.issue_refresh_token(user)
        result = LoginResult(
            user_id=user.id,
            email=user.email,
            nickname=user.nickname,
            verified=bool(user.verified),
            token=access.token,
            refresh_token=refresh.token,
            expires_at=access.expires_at,
        )
        self._commit()
        logger.info("User logged in: user_id=%s", result.user_id)
        return result

    @_guard_storage
    def refresh_session(self, refresh_token: str) -> SessionTokens:
        now = self.clock.now()
        rt = refresh_tokens.find_refresh_token(self.db, refresh_token)
        if rt is None:
            raise InvalidTokenError("Invalid refresh token")
        if not rt.is_valid(now):
            if rt.revoked_at is not None and as_utc(rt.expires_at) > now:
                if now - as_utc(rt.revoked_at) >= timedelta(seconds=settings.REFRESH_REUSE_GRACE_SECONDS):
                    self._handle_refresh_reuse(rt, now)
                else:
                    logger.info("Refresh token reused within rotation grace: user_id=%s", rt.user_id)
            raise InvalidTokenError("Refresh token is expired or revoked")

        user = users.get_user_by_id(self.db, rt.user_id)
        if user is None:
            raise InvalidTokenError("Invalid refresh token")

        # Rotation: revoke old + insert new commit together, and only one caller can win the revoke.
        if not refresh_tokens.revoke_if_valid(self.db, token_id=rt.id, now=now):
            raise InvalidTokenError("Refresh token is expired or revoked")
        access = self.issuer.issue_access_token(user)
        new_refresh = self.issuer.issue_refresh_token(user)
        self._commit()

        return SessionTokens(token=access.token, refresh_token=new_refresh.token, expires_at=access.expires_at)

    def _handle_refresh_reuse(self, rt: RefreshToken, now: datetime) -> None:
        user_id = rt.user_id
        if not settings.REFRESH_REUSE_REVOKES_FAMILY:
            logger.warning("Revoked refresh token presented again: user_id=%s", user_id)
            return
        revoked = refresh_tokens.revoke_all_for_user(self.db, user_id=user_id, now=now)
        self._commit()
        logger.warning(
            "Revoked refresh token presented again: user_id=%s; revoked %d live refresh tokens",
            user_id,
            revoked,
        )

    @_guard_storage
    def logout(self, refresh_token: str | None) -> None:
        if not refresh_token:
            return
        if refresh_tokens.revoke_refresh_token(self.db, refresh_token, now=self.clock.now()):
            self._commit()
            logger.info("Refresh token revoked on logout")

    @_guard_storage
    def logout_all(self, user_id: str) -> int:
        revoked = refresh_tokens.revoke_all_for_user(self.db, user_id=user_id, now=self.clock.now())
        self._commit()
        logger.info("Revoked %d refresh tokens for user_id=%s", revoked, user_id)
        return revoked

    # -----------------------------
    # Password reset
    # -----------------------------
    @_guard_storage
    def forgot_password(
        self,
        email: str,
        *,
        captcha_token: str | None = None,
        background: BackgroundTasks | None = None,
    ) -> str:
        """
        Acknowledge a reset request without revealing whether ``email`` exists.

        The request path only touches the rate limiter. With ``background`` the
        account lookup, ticket issuance and send run after the response on a
        session of their own, so known and unknown addresses do identical work
        before the acknowledgement. Without it the reset is issued inline.
        """
        email = users.normalize_email(email)
        self._check_attempt(
            "forgot_password",
            email,
            limit=settings.FORGOT_PASSWORD_LIMIT,
            window_seconds=settings.FORGOT_PASSWORD_WINDOW_SECONDS,
            captcha_limit=settings.FORGOT_PASSWORD_CAPTCHA_LIMIT,
            captcha_token=captcha_token,
        )

        if background is not None:
            background.add_task(self._send_password_reset_in_new_session, email)
        else:
            self._send_password_reset(self.db, email)
        return FORGOT_PASSWORD_ACK

    def _send_password_reset(self, db: Session, email: str) -> bool:
        user = users.get_active_user_by_email(db, email)
        if user is None:
            return False

        user_id = user.id
        issued = TokenIssuer(db, self.clock).issue_password_reset_token(user)
        db.commit()

        payload = {"token": issued.token, "expires_minutes": settings.PASSWORD_RESET_TOKEN_TTL_MINUTES}
        self._notify(email, NotificationKind.PASSWORD_RESET, payload)
        logger.info("Password reset requested: user_id=%s", user_id)
        return True

    def _send_password_reset_in_new_session(self, email: str) -> None:
        # Runs after the response is sent: failures can only be logged.
        db = self.session_factory()
        try:
            self._send_password_reset(db, email)
        except (SQLAlchemyError, StorageError):
            db.rollback()
            logger.exception("Deferred password reset failed")
        finally:
            db.close()

    @_guard_storage
    def verify_reset_token(self, reset_token: str) -> ResetTokenStatus:
        if not reset_token:
            return ResetTokenStatus(valid=False)
        user = users.get_user_by_reset_token_hash(self.db, hash_secret(reset_token))
        if user is None or not user.password_reset.is_live(self.clock.now()):
            return ResetTokenStatus(valid=False)
        return ResetTokenStatus(valid=True, email=user.email)

    @_guard_storage
    def reset_password(self, reset_token: str, new_password: str) -> ResetResult:
        now = self.clock.now()
        token_hash = hash_secret(reset_token) if reset_token else ""
        user = users.get_user_by_reset_token_hash(self.db, token_hash) if token_hash else None
        if user is None or not user.password_reset.is_live(now):
            raise InvalidTokenError("Invalid or expired reset token")

        ensure_strong_password(new_password, email=user.email, nickname=user.nickname)

        user_id, email = user.id, user.email
        if not users.consume_reset_ticket(
            self.db,
            user_id=user_id,
            token_hash=token_hash,
            new_password_hash=hash_password(new_password),
            now=now,
        ):
            raise InvalidTokenError("Invalid or expired reset token")
        # Force re-login everywhere; committed with the password change.
        revoked = refresh_tokens.revoke_all_for_user(self.db, user_id=user_id, now=now)
        self._commit()

        logger.info("Password reset completed: user_id=%s revoked_refresh_tokens=%d", user_id, revoked)
        return ResetResult(success=True, message="Password has been reset. Please log in again.", email=email)
