from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import RateLimitedError
from app.services.rate_limiter import Throttled, evaluate_attempt, get_rate_limiter


def require_rate_limit(route_key: str, *, limit: int, window_seconds: int) -> Callable:
    """
    Per-client guard for endpoints that have no natural identifier before the
    handler runs (login). Runs ahead of the handler so the SQL limiter's commit
    never carries request writes with it.
    """
    resolved_limit = max(1, limit)
    resolved_window = max(1, window_seconds)

    def dependency(request: Request, db: Session = Depends(get_db)) -> None:
        decision = evaluate_attempt(
            get_rate_limiter(db),
            identifier=_resolve_identifier(request),
            route_key=route_key,
            limit=resolved_limit,
            window_seconds=resolved_window,
        )
        if isinstance(decision, Throttled):
            raise RateLimitedError(decision.remaining_seconds)

    return dependency


def _resolve_identifier(request: Request) -> str:
    client = request.client
    host = (client.host if client else None) or "unknown"
    return f"ip:{host}"
