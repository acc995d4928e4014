# app/models/user.py
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, String, func, text
from sqlalchemy.orm import relationship

from app.core.base import Base
from app.core.clock import as_utc


@dataclass(frozen=True)
class VerificationTicket:
    """The pending email verification of an account: resume handle, code digest, expiry."""

    token: str
    code_hash: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return as_utc(self.expires_at) > now


@dataclass(frozen=True)
class ResetTicket:
    token_hash: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return as_utc(self.expires_at) > now


def _new_user_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=_new_user_id)

    # Always stored stripped + lower-cased; uniqueness only among non-deleted rows.
    email = Column(String(255), nullable=False, index=True)
    nickname = Column(String(50), nullable=True)

    # Null for social-only accounts.
    password_hash = Column(String(255), nullable=True)
    password_changed_at = Column(DateTime(timezone=True), nullable=True)

    verified = Column(Boolean, nullable=False, default=False, server_default="false")

    email_verification_token = Column(String(64), nullable=True, unique=True, index=True)
    email_verification_code_hash = Column(String(128), nullable=True)
    email_verification_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    verification_sent_at = Column(DateTime(timezone=True), nullable=True)

    password_reset_token_hash = Column(String(128), nullable=True, unique=True, index=True)
    password_reset_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    refresh_tokens = relationship(
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "uq_users_email_active",
            "email",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        CheckConstraint(
            "(email_verification_token IS NULL AND email_verification_code_hash IS NULL "
            "AND email_verification_expires_at IS NULL) OR "
            "(email_verification_token IS NOT NULL AND email_verification_code_hash IS NOT NULL "
            "AND email_verification_expires_at IS NOT NULL)",
            name="ck_users_verification_ticket_complete",
        ),
        CheckConstraint(
            "(password_reset_token_hash IS NULL) = (password_reset_expires_at IS NULL)",
            name="ck_users_reset_ticket_complete",
        ),
    )

    # -------------------------
    # Ticket value objects
    # -------------------------
    @property
    def verification(self) -> VerificationTicket | None:
        if self.email_verification_token is None:
            return None
        return VerificationTicket(
            token=self.email_verification_token,
            code_hash=self.email_verification_code_hash,
            expires_at=as_utc(self.email_verification_expires_at),
        )

    @verification.setter
    def verification(self, ticket: VerificationTicket | None) -> None:
        self.email_verification_token = ticket.token if ticket else None
        self.email_verification_code_hash = ticket.code_hash if ticket else None
        self.email_verification_expires_at = ticket.expires_at if ticket else None

    @property
    def password_reset(self) -> ResetTicket | None:
        if self.password_reset_token_hash is None:
            return None
        return ResetTicket(
            token_hash=self.password_reset_token_hash,
            expires_at=as_utc(self.password_reset_expires_at),
        )

    @password_reset.setter
    def password_reset(self, ticket: ResetTicket | None) -> None:
        self.password_reset_token_hash = ticket.token_hash if ticket else None
        self.password_reset_expires_at = ticket.expires_at if ticket else None
