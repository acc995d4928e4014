from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from app.core.security import hash_secret
from app.models.refresh_token import RefreshToken

logger = logging.getLogger(__name__)


def add_refresh_token(db: Session, *, user_id: str, raw_token: str, expires_at: datetime, now: datetime) -> RefreshToken:
    """
    Stage a new refresh token row (hash only) in the caller's transaction.
    """
    rt = RefreshToken(
        user_id=user_id,
        token_hash=hash_secret(raw_token),
        expires_at=expires_at,
        created_at=now,
        revoked_at=None,
    )
    db.add(rt)
    db.flush()
    return rt


def find_refresh_token(db: Session, raw_token: str) -> RefreshToken | None:
    if not raw_token:
        return None
    return db.query(RefreshToken).filter(RefreshToken.token_hash == hash_secret(raw_token)).first()


def revoke_if_valid(db: Session, *, token_id: str, now: datetime) -> bool:
    """
    Revoke a token only while it is still valid. Exactly one concurrent caller can
    win this update; everyone else sees rowcount 0.
    """
    result = db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.id == token_id,
            RefreshToken.revoked_at.is_(None),
            RefreshToken.expires_at > now,
        )
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def revoke_refresh_token(db: Session, raw_token: str, *, now: datetime) -> bool:
    """Logout: revoke if not already revoked. Unknown tokens are ignored."""
    result = db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.token_hash == hash_secret(raw_token),
            RefreshToken.revoked_at.is_(None),
        )
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def revoke_all_for_user(db: Session, *, user_id: str, now: datetime) -> int:
    result = db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def delete_expired_refresh_tokens(db: Session, *, now: datetime) -> int:
    """Hard delete, regardless of revocation. Only the sweeper calls this."""
    result = db.execute(
        delete(RefreshToken)
        .where(RefreshToken.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
