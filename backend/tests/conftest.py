import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time: configure the environment before importing app.*.
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SWEEPERS_ENABLED", "false")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_BACKEND", "sql")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core import config as app_config
from app.core.security import hash_password
from app.services.rate_limiter import reset_rate_limiter

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User  # noqa: F401
from app.models.refresh_token import RefreshToken  # noqa: F401
from app.models.rate_limit_counter import RateLimitCounter  # noqa: F401

from app.core.database import get_db
from app.dependencies.auth_flow import get_clock, get_notifier, get_session_factory
from app.services.auth_flow import AuthFlow

STRONG_PASSWORD = "Str0ng!Marketplace"


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class CapturingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.succeed = True

    def send(self, destination, kind, payload) -> bool:
        self.sent.append((destination, kind.value, dict(payload)))
        return self.succeed

    def last(self, kind: str) -> dict:
        for destination, sent_kind, payload in reversed(self.sent):
            if sent_kind == kind:
                return {"destination": destination, **payload}
        raise AssertionError(f"no {kind} notification captured")

    def count(self, kind: str) -> int:
        return sum(1 for _, sent_kind, _ in self.sent if sent_kind == kind)


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_factory(db_engine):
    # The in-memory DB persists across tests with StaticPool: reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def file_session_factory(tmp_path):
    # Concurrent sessions need real connections, so use a file DB. BEGIN IMMEDIATE makes
    # SQLite take the write lock up front the way a row lock would on Postgres.
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'auth.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests tweak the process-global settings object; restore it after each test.
    """
    keys = [
        "REFRESH_REUSE_REVOKES_FAMILY",
        "REFRESH_REUSE_GRACE_SECONDS",
        "VERIFICATION_RESEND_COOLDOWN_SECONDS",
        "UNVERIFIED_ACCOUNT_GRACE_HOURS",
        "RATE_LIMIT_BACKEND",
        "DDB_RATE_LIMIT_TABLE",
        "CAPTCHA_ENABLED",
        "TURNSTILE_SECRET_KEY",
        "EMAIL_ENABLED",
        "EMAIL_PROVIDER",
        "FROM_EMAIL",
        "RESEND_API_KEY",
        "AWS_REGION",
        "PASSWORD_MIN_LENGTH",
        "LOGIN_RATE_LIMIT",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)
        reset_rate_limiter()


@pytest.fixture()
def frozen_clock():
    # Five minutes into the current hour keeps short test sequences inside one
    # rate-limit window while issued JWTs remain valid against the real clock.
    start = datetime.now(timezone.utc).replace(minute=5, second=0, microsecond=0)
    return FrozenClock(start)


@pytest.fixture()
def notifier():
    return CapturingNotifier()


@pytest.fixture()
def flow(db_session, session_factory, frozen_clock, notifier):
    return AuthFlow(db_session, clock=frozen_clock, notifier=notifier, session_factory=session_factory)


@pytest.fixture()
def app(db_session, session_factory, frozen_clock, notifier):
    import app.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_clock] = lambda: frozen_clock
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def make_user(db_session, frozen_clock):
    """
    Insert a user row directly, bypassing the registration flow.
    """

    def _make_user(
        email: str = "seller@example.com",
        *,
        password: str | None = STRONG_PASSWORD,
        verified: bool = True,
        nickname: str | None = "gearhead",
        created_at: datetime | None = None,
    ) -> User:
        now = frozen_clock.now()
        user = User(
            email=email,
            nickname=nickname,
            password_hash=hash_password(password) if password else None,
            password_changed_at=now,
            verified=verified,
            created_at=created_at or now,
            updated_at=now,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user
