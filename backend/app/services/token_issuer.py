"""
Issues every credential the auth flow hands out and owns their expiry policy.

Verification and reset tickets are written onto the user row (replacing any
previous ticket of the same kind); refresh tokens get their own row. None of
the raw values are returned unless the store write succeeded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.config import settings
from app.core.errors import StorageError
from app.core.security import (
    create_access_token,
    generate_opaque_token,
    generate_verification_code,
    hash_secret,
)
from app.models.user import ResetTicket, User, VerificationTicket
from app.services.refresh_tokens import add_refresh_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedVerification:
    token: str
    code: str
    expires_at: datetime


def verification_code_ttl() -> timedelta:
    return timedelta(minutes=settings.EMAIL_VERIFICATION_CODE_TTL_MINUTES)


def password_reset_ttl() -> timedelta:
    return timedelta(minutes=settings.PASSWORD_RESET_TOKEN_TTL_MINUTES)


def refresh_token_ttl() -> timedelta:
    return timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)


class TokenIssuer:
    def __init__(self, db: Session, clock: Clock = system_clock) -> None:
        self.db = db
        self.clock = clock

    def _flush(self) -> None:
        try:
            self.db.flush()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError() from exc

    def issue_verification_code(self, user: User) -> IssuedVerification:
        now = self.clock.now()
        code = generate_verification_code()
        ticket = VerificationTicket(
            token=generate_opaque_token(32),
            code_hash=hash_secret(code),
            expires_at=now + verification_code_ttl(),
        )
        user.verification = ticket
        self._flush()
        return IssuedVerification(token=ticket.token, code=code, expires_at=ticket.expires_at)

    def issue_password_reset_token(self, user: User) -> IssuedToken:
        now = self.clock.now()
        raw = generate_opaque_token(48)
        ticket = ResetTicket(token_hash=hash_secret(raw), expires_at=now + password_reset_ttl())
        user.password_reset = ticket
        self._flush()
        return IssuedToken(token=raw, expires_at=ticket.expires_at)

    def issue_access_token(self, user: User) -> IssuedToken:
        claims = {
            "sub": user.id,
            "email": user.email,
            "nickname": user.nickname or "",
            "verified": bool(user.verified),
        }
        token, expires_at = create_access_token(claims, issued_at=self.clock.now())
        return IssuedToken(token=token, expires_at=expires_at)

    def issue_refresh_token(self, user: User) -> IssuedToken:
        now = self.clock.now()
        raw = generate_opaque_token(64)
        expires_at = now + refresh_token_ttl()
        try:
            add_refresh_token(self.db, user_id=user.id, raw_token=raw, expires_at=expires_at, now=now)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError() from exc
        return IssuedToken(token=raw, expires_at=expires_at)
