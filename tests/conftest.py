"""
tests/conftest.py -- Shared test fixtures for Homeboard tests.

This module provides:
  - engine: a migrated, file-backed SQLite store in tmp_path
  - settings: Settings pointing at tmp_path with a fixed SECRET_KEY
  - user_store / session_store / config_store: stores on that engine
  - clock: injectable FakeClock so expiry tests never sleep
  - make_user: factory for stored users
  - api_client: TestClient on the real app with a patched lifespan and an
    admin session cookie
  - asgi_request: sender for one request through httpx.ASGITransport with a
    chosen peer address (TestClient always reports "testclient")

Design: file-backed databases under tmp_path rather than shared-memory URIs.
The stores open a connection per call from a thread pool, and WAL mode plus
the backup API need a real file anyway.

The DEBUG env var must be set before any api/ import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app, wire_app_state
from auth.config_store import SystemConfigStore
from auth.models import User
from auth.passwords import hash_password
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import Settings
from database.engine import create_db_engine
from database.runner import MigrationRunner

TEST_SECRET = "test-secret-key-for-homeboard-0123456789abcdef"


class FakeClock:
    """Callable epoch clock with manual advance."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_engine(path: Path) -> Engine:
    return create_db_engine(f"sqlite:///{path}")


def make_migrated_engine(path: Path) -> Engine:
    engine = make_engine(path)
    MigrationRunner(engine).run()
    return engine


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    eng = make_migrated_engine(tmp_path / "homeboard.db")
    yield eng
    eng.dispose()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET, data_dir=tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user_store(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def session_store(engine: Engine, clock: FakeClock) -> SessionStore:
    return SessionStore(engine, secret_key=TEST_SECRET, clock=clock)


@pytest.fixture
def config_store(engine: Engine) -> SystemConfigStore:
    return SystemConfigStore(engine)


def _create_user(store: UserStore, username: str, password: str | None = None, group_id: str = "user") -> User:
    uid = store.create_user(
        User(
            username=username,
            group_id=group_id,
            hashed_password=hash_password(password) if password else None,
        )
    )
    return store.get_by_id(uid)


@pytest.fixture
def make_user(user_store: UserStore):
    """Return a factory: make_user(username, password=None, group_id="user") -> stored User."""

    def _make(username: str, password: str | None = None, group_id: str = "user") -> User:
        return _create_user(user_store, username, password, group_id)

    return _make


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires stores on the test engine into app.state so TestClient routes see
    the isolated test database rather than DATA_DIR.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_app_state(app, engine, settings)
        yield

    return test_lifespan


@dataclass
class ApiEnv:
    client: TestClient
    engine: Engine
    settings: Settings
    admin: User
    admin_token: str


@pytest.fixture
def api_client(engine: Engine, settings: Settings) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv whose client carries an admin session cookie.

    The admin's password is "adminpass123". The rate limiter's in-memory
    counters are reset so login tests do not trip each other's limits.
    """
    limiter.reset()
    users = UserStore(engine)
    admin = _create_user(users, "testadmin", "adminpass123", group_id="admin")
    session = SessionStore(engine, secret_key=settings.secret_key).create(admin, ttl=3600)

    app.router.lifespan_context = _patch_lifespan(engine, settings)
    with TestClient(app, raise_server_exceptions=True) as client:
        client.cookies.set(settings.session_cookie_name, session.token)
        yield ApiEnv(client=client, engine=engine, settings=settings, admin=admin, admin_token=session.token)


def _send_as_peer(
    method: str,
    path: str,
    peer: str,
    headers: dict[str, str] | None = None,
    cookies: dict[str, str] | None = None,
    json: dict | None = None,
) -> httpx.Response:
    """Send one request to the app as if it arrived from peer.

    Runs without a lifespan; the asgi_request fixture wires app.state first.
    """

    async def _send() -> httpx.Response:
        transport = httpx.ASGITransport(app=app, client=(peer, 50000))
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver", cookies=cookies) as client:
            return await client.request(method, path, headers=headers, json=json)

    return asyncio.run(_send())


@pytest.fixture
def asgi_request(engine: Engine, settings: Settings):
    """Wire app.state on the test engine and return a sender that picks the peer address."""
    limiter.reset()
    wire_app_state(app, engine, settings)
    return _send_as_peer
