import os
from typing import Callable, Generator, Iterator, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.engine import Engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers every table on Base.metadata
from core.config import load_billing_settings
from database import Base, get_db
from services import subscription_notifier
from web.middleware.auth_context import AuthenticatedUser


# PostgreSQL UUID columns render as TEXT on SQLite.
@compiles(UUID, "sqlite")  # type: ignore[misc]
def _compile_uuid_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
    return "TEXT"


@pytest.fixture(autouse=True)
def _reset_billing_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Fresh settings and listeners per test; no outbound webhook unless a test opts in."""

    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    load_billing_settings.cache_clear()
    subscription_notifier.reset_listeners_for_tests()
    try:
        yield
    finally:
        load_billing_settings.cache_clear()
        subscription_notifier.reset_listeners_for_tests()


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def build_client(session_factory: Callable[[], Session]) -> Iterator[Callable[..., TestClient]]:
    """Mount routers on a bare app with the test database and an optional signed-in account."""

    from web.deps import get_current_user, get_optional_user, get_session_factory

    clients = []

    def _build(*routers, user_id: Optional[str] = "acct-1", email: Optional[str] = "user@example.com") -> TestClient:
        app = FastAPI()
        for router in routers:
            app.include_router(router, prefix="/api/v1")

        def _get_db():
            session = session_factory()
            try:
                yield session
            finally:
                session.close()

        user = AuthenticatedUser(id=user_id, email=email, role="standard") if user_id else None

        def _current_user() -> AuthenticatedUser:
            if user is None:
                from fastapi import HTTPException

                raise HTTPException(status_code=401, detail={"code": "auth.required", "message": "Sign in."})
            return user

        app.dependency_overrides[get_db] = _get_db
        app.dependency_overrides[get_session_factory] = lambda: session_factory
        app.dependency_overrides[get_current_user] = _current_user
        app.dependency_overrides[get_optional_user] = lambda: user
        client = TestClient(app)
        clients.append(client)
        return client

    try:
        yield _build
    finally:
        for client in clients:
            client.close()
