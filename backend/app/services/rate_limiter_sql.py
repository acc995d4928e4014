from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StorageError
from app.models.rate_limit_counter import RateLimitCounter
from app.services.rate_limiter import RateLimitResult, build_limiter_key

logger = logging.getLogger(__name__)

_MAX_INSERT_RACES = 3


@dataclass
class SqlRateLimiter:
    """
    Fixed-window limiter backed by ``rate_limit_counters``.

    Every check is one atomic ``UPDATE ... RETURNING`` against the counter row, so
    concurrent requests for the same identifier can neither skip nor double-count
    an attempt. The increment is committed before returning.
    """

    db: Session

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        limiter_key = build_limiter_key(route_key, window_seconds)

        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(
                allowed=True,
                retry_after_seconds=0,
                limit=limit,
                remaining=0,
                count=0,
                window_reset_epoch=now_ts + max(window_seconds, 0),
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        window_start = now_ts - (now_ts % window_seconds)
        window_end = window_start + window_seconds

        try:
            count = self._increment(
                identifier=identifier,
                limiter_key=limiter_key,
                window_start=window_start,
                expires_at=window_end,
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError() from exc

        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=0 if allowed else max(1, window_end - now_ts),
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=window_end,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    def _increment(self, *, identifier: str, limiter_key: str, window_start: int, expires_at: int) -> int:
        key_filter = (
            RateLimitCounter.identifier == identifier,
            RateLimitCounter.route_key == limiter_key,
        )

        for _ in range(_MAX_INSERT_RACES):
            # Same window: bump the counter.
            row = self.db.execute(
                update(RateLimitCounter)
                .where(*key_filter, RateLimitCounter.window_start == window_start)
                .values(count=RateLimitCounter.count + 1)
                .returning(RateLimitCounter.count)
                .execution_options(synchronize_session=False)
            ).first()
            if row is not None:
                self.db.commit()
                return int(row[0])

            # Older window: start over at 1.
            row = self.db.execute(
                update(RateLimitCounter)
                .where(*key_filter, RateLimitCounter.window_start < window_start)
                .values(window_start=window_start, count=1, expires_at=expires_at)
                .returning(RateLimitCounter.count)
                .execution_options(synchronize_session=False)
            ).first()
            if row is not None:
                self.db.commit()
                return int(row[0])

            # First attempt ever. A concurrent insert loses on the primary key and retries the update.
            try:
                self.db.execute(
                    insert(RateLimitCounter).values(
                        identifier=identifier,
                        route_key=limiter_key,
                        window_start=window_start,
                        count=1,
                        expires_at=expires_at,
                    )
                )
                self.db.commit()
                return 1
            except IntegrityError:
                self.db.rollback()
                logger.debug("Rate limit counter insert raced for %s; retrying update", limiter_key)

        raise StorageError("Could not record rate limit attempt")


def purge_expired_counters(db: Session, *, now_ts: int) -> int:
    """Remove counters whose window ended before ``now_ts``."""
    result = db.execute(
        delete(RateLimitCounter)
        .where(RateLimitCounter.expires_at <= now_ts)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
