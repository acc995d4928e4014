# app/models/rate_limit_counter.py
from sqlalchemy import BigInteger, Column, Integer, String

from app.core.base import Base


class RateLimitCounter(Base):
    """
    One fixed-window attempt counter per (identifier, route_key).
    Mutated only through single-statement conditional updates.
    """

    __tablename__ = "rate_limit_counters"

    identifier = Column(String(320), primary_key=True)
    route_key = Column(String(100), primary_key=True)

    # Epoch seconds, aligned to the window size
    window_start = Column(BigInteger, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    expires_at = Column(BigInteger, nullable=False, index=True)
