# app/models/refresh_token.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base
from app.core.clock import as_utc


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)

    user_id = Column(
        String(32),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Store ONLY a hash of the refresh token (never store raw refresh token)
    token_hash = Column(String(128), unique=True, index=True, nullable=False)

    # Absolute expiration; the sweeper hard-deletes rows past this point
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Set on logout, rotation or password reset. Revoked rows are kept until expiry.
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="refresh_tokens")

    def is_valid(self, now: datetime) -> bool:
        return self.revoked_at is None and as_utc(self.expires_at) > now
