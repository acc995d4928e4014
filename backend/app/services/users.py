# app/services/users.py
"""
User rows of the credential store.

Lookups plus the row-scoped conditional updates that request flows and
sweepers run against ``users``. Every mutation here is a single UPDATE whose
WHERE clause re-checks the state it depends on, so a sweeper pass and a live
request touching the same row cannot both apply (or lose) a change.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.models.user import User

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def get_active_user_by_email(db: Session, email: str) -> Optional[User]:
    """Look up the non-deleted account for an email address."""
    return (
        db.query(User)
        .filter(User.email == normalize_email(email), User.deleted_at.is_(None))
        .first()
    )


def has_deleted_account(db: Session, email: str) -> bool:
    return (
        db.query(User.id)
        .filter(User.email == normalize_email(email), User.deleted_at.isnot(None))
        .first()
        is not None
    )


def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()


def get_user_by_verification_token(db: Session, token: str) -> Optional[User]:
    if not token:
        return None
    return (
        db.query(User)
        .filter(User.email_verification_token == token, User.deleted_at.is_(None))
        .first()
    )


def get_user_by_reset_token_hash(db: Session, token_hash: str) -> Optional[User]:
    return (
        db.query(User)
        .filter(User.password_reset_token_hash == token_hash, User.deleted_at.is_(None))
        .first()
    )


# -----------------------------
# Conditional updates
# -----------------------------
def mark_verified_if_code_matches(db: Session, *, user_id: str, code_hash: str, now: datetime) -> bool:
    """
    Flip the account to verified and clear its ticket, only while the ticket with
    ``code_hash`` is still live. Returns False if the ticket changed or expired meanwhile.
    """
    result = db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.deleted_at.is_(None),
            User.email_verification_code_hash == code_hash,
            User.email_verification_expires_at > now,
        )
        .values(
            verified=True,
            email_verification_token=None,
            email_verification_code_hash=None,
            email_verification_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def consume_reset_ticket(
    db: Session,
    *,
    user_id: str,
    token_hash: str,
    new_password_hash: str,
    now: datetime,
) -> bool:
    """Set the new password and clear the reset ticket, only if that ticket is still live."""
    result = db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.deleted_at.is_(None),
            User.password_reset_token_hash == token_hash,
            User.password_reset_expires_at > now,
        )
        .values(
            password_hash=new_password_hash,
            password_changed_at=now,
            password_reset_token_hash=None,
            password_reset_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def clear_expired_verification_tickets(db: Session, *, now: datetime) -> int:
    result = db.execute(
        update(User)
        .where(
            User.email_verification_expires_at.isnot(None),
            User.email_verification_expires_at <= now,
        )
        .values(
            email_verification_token=None,
            email_verification_code_hash=None,
            email_verification_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def clear_expired_reset_tickets(db: Session, *, now: datetime) -> int:
    result = db.execute(
        update(User)
        .where(
            User.password_reset_expires_at.isnot(None),
            User.password_reset_expires_at <= now,
        )
        .values(password_reset_token_hash=None, password_reset_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def soft_delete_unverified_accounts(db: Session, *, now: datetime, created_before: datetime) -> int:
    """
    Soft-delete accounts that are still unverified past the grace window and hold no
    live verification ticket. Rows are kept for audit; only ``deleted_at`` is set.
    """
    result = db.execute(
        update(User)
        .where(
            User.verified.is_(False),
            User.deleted_at.is_(None),
            User.created_at <= created_before,
            or_(
                User.email_verification_expires_at.is_(None),
                User.email_verification_expires_at <= now,
            ),
        )
        .values(deleted_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
