"""Test fixtures: a fresh SQLite database per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI without a server:

1. Each test gets its own database file under tmp_path, with the schema
   created from the models. Nothing leaks between tests.
2. The engine uses NullPool, so every session opens its own connection.
   That lets two sessions race against each other for real, which the
   refresh-rotation tests rely on.
3. The app's get_db, get_notifier and get_token_issuer dependencies are
   overridden: requests use the test database, a recording notifier
   instead of SMTP, and an issuer with known secrets.
"""

import os

# Must be set before tlca.config is imported anywhere
os.environ.setdefault("TLCA_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tlca.auth.jwt import TokenIssuer, get_token_issuer
from tlca.db import engine as db_engine
from tlca.db.engine import build_engine, get_db
from tlca.db.models import Base
from tlca.main import app
from tlca.services.notifier import get_notifier
from tlca.services.session_manager import SessionManager

ACCESS_SECRET = "test-access-secret-0123456789abcdef"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef"
PASSWORD = "correct horse battery"


class FakeNotifier:
    """Records confirmation emails instead of sending them."""

    def __init__(self, ok: bool = True, error: Exception | None = None):
        self.ok = ok
        self.error = error
        self.sent: list[dict] = []

    async def send(self, to: str, token: str, *, username: str) -> bool:
        self.sent.append({"to": to, "token": token, "username": username})
        if self.error:
            raise self.error
        return self.ok


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    """Cheapest bcrypt work factor; hashing speed isn't under test."""
    monkeypatch.setattr("tlca.auth.password.BCRYPT_ROUNDS", 4)


@pytest_asyncio.fixture()
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tlca.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def issuer():
    return TokenIssuer(ACCESS_SECRET, REFRESH_SECRET)


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def manager(db_session, issuer, notifier):
    return SessionManager(db_session, issuer, notifier)


@pytest.fixture()
def confirmed_user(manager, notifier):
    """Factory: sign up + confirm an account, return its username."""

    async def _create(email: str = "jane@example.com", username: str | None = None):
        assert await manager.sign_up("Jane", "Doe", email, PASSWORD, username) is True
        sent = notifier.sent[-1]
        assert await manager.validate_account(sent["username"], sent["token"]) is True
        return sent["username"]

    return _create


@pytest_asyncio.fixture()
async def client(engine, session_factory, issuer, notifier, monkeypatch):
    """HTTP client running the real app against the per-test database."""
    monkeypatch.setattr(db_engine, "engine", engine)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_token_issuer] = lambda: issuer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
