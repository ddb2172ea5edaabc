"""
tests/conftest.py -- Shared fixtures for the TaskNest auth test suite.

This module provides:
  - FakeClock: a controllable server clock injected into every component
  - RecordingNotifier: captures reset/invite notices instead of sending them
  - component fixtures (credentials, ledger, invites, audit, sessions) built on
    a fresh in-memory database per test
  - make_principal: factory fixture for seeding accounts
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: make_engine("sqlite://") uses StaticPool, so every checkout -- from
the test thread or from TestClient's worker threads -- sees the same
in-memory database. The audit recorder writes from its own background
thread, so it always gets a SEPARATE in-memory engine; sharing the single
StaticPool connection across threads would interleave transactions.

bcrypt_rounds=4 keeps hashing fast; production uses 12.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
TestClient talks to host "testserver", which must be an allowed host.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: Set env before any core/auth import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.recorder import AuditRecorder, make_audit_engine
from auth.invites import InviteLedger
from auth.ledger import TokenLedger
from auth.schema import make_engine
from auth.sessions import SessionManager
from auth.store import CredentialStore

TEST_SECRET = "test-secret-key-for-the-suite-0123456789abcdef"
TEST_ROUNDS = 4
DEFAULT_PASSWORD = "correct-horse-1"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class RecordingNotifier:
    """Notifier that remembers what it was asked to send."""

    resets: list[tuple[str, str]] = field(default_factory=list)
    invites: list[tuple[str, str, str]] = field(default_factory=list)

    def send_password_reset_notice(self, email: str, token: str) -> None:
        self.resets.append((email, token))

    def send_invite_notice(self, email: str, token: str, inviter_name: str) -> None:
        self.invites.append((email, token, inviter_name))


class ExplodingNotifier:
    """Notifier whose transport is down."""

    def send_password_reset_notice(self, email: str, token: str) -> None:
        raise ConnectionError("smtp unreachable")

    def send_invite_notice(self, email: str, token: str, inviter_name: str) -> None:
        raise ConnectionError("smtp unreachable")


# ---------------------------------------------------------------------------
# Component fixtures -- one fresh in-memory database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def credentials(engine, clock) -> CredentialStore:
    return CredentialStore(engine, bcrypt_rounds=TEST_ROUNDS, clock=clock)


@pytest.fixture
def ledger(engine, clock) -> TokenLedger:
    return TokenLedger(engine, secret_key=TEST_SECRET, clock=clock)


@pytest.fixture
def invites(engine, credentials, clock) -> InviteLedger:
    return InviteLedger(engine, credentials, clock=clock)


@pytest.fixture
def audit(clock) -> Generator[AuditRecorder, None, None]:
    recorder = AuditRecorder(make_audit_engine("sqlite://"), clock=clock)
    yield recorder
    recorder.close()
    recorder.engine.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sessions(credentials, ledger, invites, audit, notifier) -> Generator[SessionManager, None, None]:
    manager = SessionManager(credentials, ledger, invites, audit, notifier=notifier)
    yield manager
    manager.close()


@pytest.fixture
def make_principal(credentials):
    """Factory: make_principal("a@x.com", role="admin", active=False)."""

    def _make(email: str, password: str = DEFAULT_PASSWORD, role: str = "employee", active: bool = True, **kwargs):
        principal = credentials.create_principal(
            email=email,
            name=kwargs.pop("name", email.split("@")[0].title()),
            plaintext=password,
            role=role,
            **kwargs,
        )
        if not active:
            credentials.set_active(principal.id, False)
            principal.is_active = False
        return principal

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(sessions: SessionManager, audit: AuditRecorder):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test components into app.state so TestClient routes see
    an isolated database. The purge_task is a long-sleeping coroutine so the
    shutdown path can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.sessions = sessions
        app.state.audit = audit
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, ctx) for API integration tests.

    ctx carries sessions, audit, notifier and a seeded admin:
      ctx.admin        -- Principal, email "admin@tasknest.com", password DEFAULT_PASSWORD
      ctx.admin_token  -- a valid access token for ctx.admin
    The database is shared by every test in the module; tests use distinct
    emails so they do not depend on each other.
    """
    engine = make_engine("sqlite://")
    credentials = CredentialStore(engine, bcrypt_rounds=TEST_ROUNDS)
    ledger = TokenLedger(engine, secret_key=TEST_SECRET)
    invites = InviteLedger(engine, credentials)
    audit = AuditRecorder(make_audit_engine("sqlite://"))
    notifier = RecordingNotifier()
    sessions = SessionManager(credentials, ledger, invites, audit, notifier=notifier)

    admin = credentials.create_principal("admin@tasknest.com", "Admin User", DEFAULT_PASSWORD, role="admin")
    ctx = SimpleNamespace(
        sessions=sessions,
        audit=audit,
        notifier=notifier,
        admin=admin,
        admin_token=ledger.mint_access_token(admin.id),
    )

    app.router.lifespan_context = _patch_lifespan(sessions, audit)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, ctx

    sessions.close()
    audit.close()
    engine.dispose()
    audit.engine.dispose()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters are process-global; start every test from zero."""
    limiter.reset()
