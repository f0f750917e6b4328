"""Pytest configuration and shared fixtures."""

import os

# Settings are read at import time, so the environment must be set first
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-pytest-only-0123456789")
os.environ.setdefault("EMAIL_ENCRYPTION_KEY", "0" * 64)
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

from collections.abc import AsyncGenerator, Generator  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import authcore.models  # noqa: E402,F401
from authcore.core.config import settings  # noqa: E402
from authcore.core.context import AppContext, build_context  # noqa: E402
from authcore.core.dependencies import get_now  # noqa: E402
from authcore.db.base import Base  # noqa: E402
from authcore.db.session import get_db  # noqa: E402
from authcore.main import create_app  # noqa: E402
from authcore.models.user import User, UserRole  # noqa: E402
from authcore.services.email import dispatch  # noqa: E402
from authcore.services.email.console import ConsoleEmailProvider  # noqa: E402
from authcore.services.mfa_store import ensure_mfa_config  # noqa: E402
from tests.helpers.seed import auth_headers, create_test_user  # noqa: E402


START_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Mutable request clock shared by the app and the test."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def now(clock: Clock) -> datetime:
    return clock.now


@pytest.fixture
def ctx() -> Generator[AppContext, None, None]:
    """Application context over a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    context = build_context(settings, engine=engine)
    try:
        yield context
    finally:
        Base.metadata.drop_all(bind=engine)
        context.dispose()


@pytest.fixture
def db(ctx: AppContext) -> Generator[Session, None, None]:
    """Session with the MFA config singleton and role rows in place."""
    session = ctx.session_factory()
    ensure_mfa_config(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def outbox(monkeypatch) -> list[dict]:
    """Capture every email the app sends."""
    provider = ConsoleEmailProvider()
    monkeypatch.setattr(dispatch, "get_active_provider", lambda db, cipher: provider)
    return provider.outbox


@pytest.fixture
def app(ctx: AppContext, db: Session, clock: Clock, outbox):
    test_app = create_app(context=ctx)

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close the session, it's managed by the db fixture

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_now] = lambda: clock.now
    try:
        yield test_app
    finally:
        test_app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_user(db: Session, now: datetime) -> User:
    user = create_test_user(db, username="alice", email="alice@x.com")
    db.commit()
    return user


@pytest.fixture
def test_admin_user(db: Session) -> User:
    user = create_test_user(db, username="admin", email="admin@x.com", role=UserRole.ADMIN)
    db.commit()
    return user


@pytest.fixture
def test_super_admin(db: Session) -> User:
    user = create_test_user(db, username="root", email="root@x.com", role=UserRole.SUPER_ADMIN)
    db.commit()
    return user


@pytest.fixture
def auth_headers_admin(db: Session, test_admin_user: User, now: datetime) -> dict[str, str]:
    return auth_headers(db, test_admin_user, now)


@pytest.fixture
def auth_headers_super_admin(db: Session, test_super_admin: User, now: datetime) -> dict[str, str]:
    return auth_headers(db, test_super_admin, now)


@pytest.fixture
def auth_headers_user(db: Session, test_user: User, now: datetime) -> dict[str, str]:
    return auth_headers(db, test_user, now)
