"""
tests/conftest.py -- Shared test fixtures for Passgate unit and integration tests.

This module provides:
  - settings:      a Settings instance with a fixed SECRET_KEY and short limits
  - clock:         a controllable clock injected into every service
  - store:         a UserStore on a fresh SQLite file per test
  - services:      TokenService, MfaChallenge, AccountRecovery, SessionOrchestrator
                   wired around store + LogNotifier + clock
  - make_services: the same wiring with selected settings overridden
  - make_user:     factory that inserts a user directly through the store
  - api_client:    TestClient over the real app with a patched lifespan
  - login, auth_headers: HTTP login helper and Bearer header builder

Design: each test gets its own SQLite file under tmp_path rather than a shared
in-memory database. TestClient runs sync route handlers in a thread pool and the
store opens every transaction with BEGIN IMMEDIATE, so the tests need a
database that behaves like production across connections.

The DEBUG env var must be set before any passgate import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, install_services
from auth.mfa import MfaChallenge, random_secret
from auth.models import ADMIN_ROLE, DEFAULT_ROLES, User
from auth.orchestrator import SessionOrchestrator
from auth.recovery import AccountRecovery
from auth.sessions import TokenService
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import Settings, get_settings
from notify.mailer import LogNotifier

PASSWORD = "P@ssw0rd1"
_SECRET_KEY = "passgate-test-secret-key-0123456789abcdef"


class FakeClock:
    """Callable clock for services; tests move time with advance().

    Starts at the real current time because access JWTs are checked against
    the wall clock by python-jose.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class Services:
    store: UserStore
    settings: Settings
    clock: FakeClock
    notifier: LogNotifier
    tokens: TokenService
    mfa: MfaChallenge
    recovery: AccountRecovery
    orchestrator: SessionOrchestrator


def build_services(store: UserStore, settings: Settings, clock: FakeClock) -> Services:
    notifier = LogNotifier(settings)
    tokens = TokenService(store, settings, clock=clock)
    mfa = MfaChallenge(store, tokens, settings, clock=clock)
    recovery = AccountRecovery(store, tokens, notifier, settings, clock=clock)
    orchestrator = SessionOrchestrator(store, tokens, mfa, recovery, settings, clock=clock)
    return Services(store, settings, clock, notifier, tokens, mfa, recovery, orchestrator)


def _make_test_store(tmp_path: Path, name: str = "auth") -> UserStore:
    """Create an isolated file-backed SQLite store for one test.

    Args:
        tmp_path: pytest's per-test directory.
        name:     file stem, so one test can hold several independent stores.
    """
    return UserStore(db_url=f"sqlite:///{tmp_path / f'{name}.db'}", timeout=5.0)


def _patch_lifespan(user_store: UserStore, notifier: LogNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a LogNotifier into app.state through the same
    install_services() the real lifespan uses.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, user_store, notifier, get_settings())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with empty slowapi counters."""
    limiter.reset()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        secret_key=_SECRET_KEY,
        access_token_expire_seconds=900,
        refresh_token_expire_seconds=3600,
        max_refresh_tokens_per_user=3,
        mfa_ticket_expire_seconds=300,
        mfa_ticket_max_attempts=3,
        mfa_backup_code_count=4,
        password_reset_expire_seconds=1800,
        frontend_url="https://app.acme.io",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> Generator[UserStore, None, None]:
    user_store = _make_test_store(tmp_path)
    yield user_store
    user_store.close()


@pytest.fixture
def services(store: UserStore, settings: Settings, clock: FakeClock) -> Services:
    return build_services(store, settings, clock)


@pytest.fixture
def make_services(store: UserStore, settings: Settings, clock: FakeClock) -> Callable[..., Services]:
    """Factory: the same wiring as `services` with some settings overridden."""

    def _make(**overrides) -> Services:
        return build_services(store, settings.model_copy(update=overrides), clock)

    return _make


@pytest.fixture
def make_user(store: UserStore) -> Callable[..., User]:
    """Factory: insert a verified local user straight through the store.

    Skips registration (and its bcrypt + email) so tests set up state quickly.
    mfa=True enrolls a fresh TOTP secret with MFA enabled.
    """

    def _make(
        email: str = "ada@acme.io",
        password: str = PASSWORD,
        admin: bool = False,
        mfa: bool = False,
        **fields,
    ) -> User:
        user = User(
            email=email,
            hashed_password=hash_password(password) if password is not None else None,
            roles=[*DEFAULT_ROLES, ADMIN_ROLE] if admin else list(DEFAULT_ROLES),
            is_email_verified=fields.pop("is_email_verified", True),
            **fields,
        )
        if mfa:
            user.mfa_secret = random_secret()
            user.is_mfa_enabled = True
        with store.transaction() as tx:
            tx.create(user)
        return user

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def api_client(store: UserStore) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app, backed by this test's store.

    The services on app.state use the real clock and get_settings(); tests
    reach them through client.app.state (notifier outbox, token service).
    """
    notifier = LogNotifier(get_settings())
    app.router.lifespan_context = _patch_lifespan(store, notifier)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def login(api_client: TestClient) -> Callable[..., dict]:
    """Factory: log in over HTTP and return the token pair dict."""

    def _login(email: str, password: str = PASSWORD) -> dict:
        resp = api_client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["mfa_required"] is False
        return data["tokens"]

    return _login


def bearer(tokens: dict) -> dict:
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def auth_headers() -> Callable[[dict], dict]:
    return bearer
