from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Protocol, Union

import boto3
from sqlalchemy.orm import Session

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int
    count: int
    window_reset_epoch: int
    limiter_key: str
    window_seconds: int


class RateLimiter(Protocol):
    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        ...


class CaptchaVerifier(Protocol):
    def verify(self, token: str) -> bool:
        ...


def build_limiter_key(route_key: str, window_seconds: int) -> str:
    return f"route:{route_key}:window:{window_seconds}"


class NoopRateLimiter:
    """
    Disabled limiter that always allows requests. Used when rate limiting is turned off
    or configuration is incomplete.
    """

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
        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit),
            count=0,
            window_reset_epoch=now_ts + window_seconds,
            limiter_key=f"noop:{route_key}:window:{window_seconds}",
            window_seconds=window_seconds,
        )


# -----------------------------
# Tagged attempt decisions
# -----------------------------
@dataclass(frozen=True)
class Allowed:
    result: RateLimitResult


@dataclass(frozen=True)
class Throttled:
    remaining_seconds: int
    result: RateLimitResult


@dataclass(frozen=True)
class RequiresCaptcha:
    result: RateLimitResult


AttemptDecision = Union[Allowed, Throttled, RequiresCaptcha]


def evaluate_attempt(
    limiter: RateLimiter,
    *,
    identifier: str,
    route_key: str,
    limit: int,
    window_seconds: int,
    captcha_limit: int = 0,
    captcha_token: str | None = None,
    captcha_verifier: CaptchaVerifier | None = None,
    now: int | None = None,
) -> AttemptDecision:
    """
    Count one attempt for ``identifier`` and decide what the caller may do.

    Within ``limit`` the attempt is Allowed. Past it, when a captcha verifier is
    available and the count is still within ``captcha_limit``, the caller has to
    prove it is human (RequiresCaptcha, or Allowed if ``captcha_token`` passes).
    Anything else is Throttled until the window resets.
    """
    result = limiter.check(
        identifier=identifier,
        route_key=route_key,
        limit=limit,
        window_seconds=window_seconds,
        now=now,
    )

    decision: AttemptDecision
    if result.allowed:
        decision = Allowed(result)
    elif captcha_verifier is not None and captcha_limit > limit and result.count <= captcha_limit:
        if captcha_token and captcha_verifier.verify(captcha_token):
            decision = Allowed(result)
        else:
            decision = RequiresCaptcha(result)
    else:
        now_ts = int(now or time.time())
        remaining = result.retry_after_seconds or (result.window_reset_epoch - now_ts)
        decision = Throttled(remaining_seconds=max(1, remaining), result=result)

    _log_decision(identifier=identifier, route_key=route_key, result=result, decision=decision)
    return decision


def _log_decision(*, identifier: str, route_key: str, result: RateLimitResult, decision: AttemptDecision) -> None:
    payload = {
        "identifier": identifier,
        "route_key": route_key,
        "limiter_key": result.limiter_key,
        "window_seconds": result.window_seconds,
        "limit": result.limit,
        "current_count": result.count,
        "remaining": result.remaining,
        "reset_epoch": result.window_reset_epoch,
        "decision": type(decision).__name__.lower(),
    }
    try:
        logger.info(json.dumps(payload, separators=(",", ":")))
    except Exception:  # pragma: no cover - defensive
        logger.exception("Failed to emit rate limit log")


# -----------------------------
# Backend selection
# -----------------------------
_shared_limiter: RateLimiter | None = None
_lock = threading.Lock()


def get_rate_limiter(db: Session | None = None) -> RateLimiter:
    """
    The SQL limiter lives on the caller's session and commits each increment
    immediately. DynamoDB and noop limiters are process-wide singletons.
    """
    backend = (settings.RATE_LIMIT_BACKEND or "").strip().lower()
    if backend == "sql":
        if db is None:
            logger.warning("SQL rate limiter requested without a session; using NoopRateLimiter")
            return NoopRateLimiter()
        from app.services.rate_limiter_sql import SqlRateLimiter

        return SqlRateLimiter(db)

    global _shared_limiter
    if _shared_limiter is not None:
        return _shared_limiter
    with _lock:
        if _shared_limiter is None:
            _shared_limiter = _build_shared_limiter(backend)
    return _shared_limiter


def reset_rate_limiter() -> None:
    """
    Test helper to ensure a fresh limiter instance is constructed after settings change.
    """

    global _shared_limiter
    with _lock:
        _shared_limiter = None


def _build_shared_limiter(backend: str) -> RateLimiter:
    if backend in {"", "none", "off", "disabled"}:
        logger.info("Rate limiting disabled via RATE_LIMIT_BACKEND=%s; using NoopRateLimiter", backend or "none")
        return NoopRateLimiter()

    if backend != "dynamodb":
        logger.warning("Unknown RATE_LIMIT_BACKEND=%r; disabling limiter", backend)
        return NoopRateLimiter()

    table_name = settings.DDB_RATE_LIMIT_TABLE
    region = settings.AWS_REGION
    if not table_name:
        logger.warning("RATE_LIMIT_BACKEND=dynamodb but DDB_RATE_LIMIT_TABLE is unset; disabling limiter")
        return NoopRateLimiter()
    if not region:
        logger.warning("RATE_LIMIT_BACKEND=dynamodb but AWS_REGION is unset; disabling limiter")
        return NoopRateLimiter()

    from app.services.rate_limiter_dynamo import DynamoRateLimiter

    client = boto3.client("dynamodb", region_name=region)
    logger.info("Rate limiting enabled using DynamoDB table %s in %s", table_name, region)
    return DynamoRateLimiter(client, table_name=table_name)
