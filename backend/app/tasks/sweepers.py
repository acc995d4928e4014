"""
Periodic cleanup of expired auth state.

Two independent loops run inside the API process (started from the FastAPI
lifespan):

- token cleanup: clears expired verification and reset tickets, hard-deletes
  expired refresh tokens and purges finished rate-limit windows. Each step
  commits on its own so one failing step never blocks the others.
- unverified account cleanup: soft-deletes accounts that never verified within
  the grace window and no longer hold a live verification ticket.

Every pass is a set of conditional bulk updates, so running a pass twice (or
concurrently with a live request) is harmless.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.config import settings
from app.services import refresh_tokens, users
from app.services.rate_limiter_sql import purge_expired_counters

logger = logging.getLogger(__name__)


@dataclass
class TokenCleanupResult:
    verification_tickets_cleared: int = 0
    reset_tickets_cleared: int = 0
    refresh_tokens_deleted: int = 0
    rate_limit_counters_purged: int = 0
    failed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_steps


def run_token_cleanup(db: Session, *, now: datetime) -> TokenCleanupResult:
    result = TokenCleanupResult()
    steps: list[tuple[str, str, Callable[[], int]]] = [
        (
            "verification_tickets",
            "verification_tickets_cleared",
            lambda: users.clear_expired_verification_tickets(db, now=now),
        ),
        (
            "reset_tickets",
            "reset_tickets_cleared",
            lambda: users.clear_expired_reset_tickets(db, now=now),
        ),
        (
            "refresh_tokens",
            "refresh_tokens_deleted",
            lambda: refresh_tokens.delete_expired_refresh_tokens(db, now=now),
        ),
        (
            "rate_limit_counters",
            "rate_limit_counters_purged",
            lambda: purge_expired_counters(db, now_ts=int(now.timestamp())),
        ),
    ]

    for name, attr, step in steps:
        try:
            count = step()
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Token cleanup step failed: %s", name)
            result.failed_steps.append(name)
            continue
        setattr(result, attr, count)

    logger.info(
        "Token cleanup: verification=%d reset=%d refresh=%d counters=%d failed=%s",
        result.verification_tickets_cleared,
        result.reset_tickets_cleared,
        result.refresh_tokens_deleted,
        result.rate_limit_counters_purged,
        ",".join(result.failed_steps) or "none",
    )
    return result


def run_unverified_account_cleanup(db: Session, *, now: datetime) -> int:
    created_before = now - timedelta(hours=settings.UNVERIFIED_ACCOUNT_GRACE_HOURS)
    try:
        deleted = users.soft_delete_unverified_accounts(db, now=now, created_before=created_before)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("Unverified account cleanup: soft-deleted %d accounts", deleted)
    return deleted


class _PeriodicWorker:
    """
    Runs one cleanup pass on an interval in a background asyncio task.

    start() schedules the loop, stop() cancels it and waits for it to finish,
    run_once() executes a single pass. Passes run in a worker thread with a
    fresh session so the blocking ORM calls stay off the event loop.
    """

    name = "periodic"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        interval_seconds: int,
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: datetime | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def last_run_at(self) -> datetime | None:
        return self._last_run_at

    def start(self) -> None:
        if self.is_running:
            logger.warning("%s worker already running", self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("%s worker started (interval=%ds)", self.name, self._interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("%s worker stopped", self.name)

    async def run_once(self) -> Any:
        result = await asyncio.to_thread(self._run_pass)
        self._last_run_at = self._clock.now()
        return result

    def _run_pass(self) -> Any:
        db = self._session_factory()
        try:
            return self._sweep(db, self._clock.now())
        finally:
            db.close()

    def _sweep(self, db: Session, now: datetime) -> Any:
        raise NotImplementedError

    def _next_delay(self, result: Any) -> int:
        return self._interval_seconds

    def _failure_delay(self) -> int:
        return self._interval_seconds

    async def _run_loop(self) -> None:
        try:
            while self._running:
                try:
                    result = await self.run_once()
                    delay = self._next_delay(result)
                except Exception:  # noqa: BLE001
                    logger.exception("Error in %s pass", self.name)
                    delay = self._failure_delay()
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("%s loop cancelled", self.name)
            raise


class TokenCleanupWorker(_PeriodicWorker):
    name = "token-cleanup"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        interval_seconds: int | None = None,
        retry_seconds: int | None = None,
        clock: Clock = system_clock,
    ) -> None:
        super().__init__(
            session_factory,
            interval_seconds=interval_seconds or settings.TOKEN_CLEANUP_INTERVAL_SECONDS,
            clock=clock,
        )
        self._retry_seconds = retry_seconds or settings.TOKEN_CLEANUP_RETRY_SECONDS

    def _sweep(self, db: Session, now: datetime) -> TokenCleanupResult:
        return run_token_cleanup(db, now=now)

    def _next_delay(self, result: TokenCleanupResult) -> int:
        return self._interval_seconds if result.ok else self._retry_seconds

    def _failure_delay(self) -> int:
        return self._retry_seconds


class UnverifiedAccountCleanupWorker(_PeriodicWorker):
    """Always waits the full interval, even after a failed pass."""

    name = "unverified-account-cleanup"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        interval_seconds: int | None = None,
        clock: Clock = system_clock,
    ) -> None:
        super().__init__(
            session_factory,
            interval_seconds=interval_seconds or settings.UNVERIFIED_CLEANUP_INTERVAL_SECONDS,
            clock=clock,
        )

    def _sweep(self, db: Session, now: datetime) -> int:
        return run_unverified_account_cleanup(db, now=now)
