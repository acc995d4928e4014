from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.database import SessionLocal, get_db
from app.services.auth_flow import AuthFlow
from app.services.notifications import EmailNotifier, Notifier
from app.services.turnstile import get_captcha_verifier


def get_clock() -> Clock:
    return system_clock


def get_notifier() -> Notifier:
    return EmailNotifier()


def get_session_factory() -> Callable[[], Session]:
    """Sessions for work deferred past the response (the request session is closed by then)."""
    return SessionLocal


def get_auth_flow(
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> AuthFlow:
    remote_ip = request.client.host if request.client else None
    return AuthFlow(
        db,
        clock=clock,
        notifier=notifier,
        captcha_verifier=get_captcha_verifier(remote_ip),
        session_factory=session_factory,
    )
