"""
tests/conftest.py -- Shared test fixtures for credcore unit and integration tests.

This module provides:
  - settings / store / issuer / service / broker: unit-level building blocks
  - api_client: TestClient over the real app with a patched lifespan

Design: unit fixtures use plain sqlite:///:memory: because they run on one
thread. api_client uses a named shared-memory SQLite URI instead, because
TestClient runs sync route handlers in a thread pool and a plain :memory:
database is per-connection. Each api_client gets its own database name so
tests never see each other's rows.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any api/auth/core
import so get_settings() picks them up: DEBUG lets it auto-generate
SECRET_KEY, low rounds keep bcrypt fast, and a high login limit keeps the
rate limiter out of the way of unrelated tests.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# CRITICAL: must run before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.broker import AuthorizationBroker
from auth.models import Principal
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from auth.verification import VerificationService
from core.config import Settings, get_settings
from tests.helpers import FrozenClock, RecordingNotifier

# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, secret_key="s" * 48, bcrypt_rounds=4)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def issuer(settings: Settings) -> TokenIssuer:
    return TokenIssuer(settings)


@pytest.fixture
def sessions(store, settings, clock) -> SessionManager:
    return SessionManager(store, settings.token_expire_seconds, clock=clock)


@pytest.fixture
def service(store, issuer, sessions, settings, notifier, clock) -> VerificationService:
    return VerificationService(store, issuer, sessions, settings, notifier=notifier, clock=clock)


@pytest.fixture
def broker(store, issuer, settings, clock) -> AuthorizationBroker:
    return AuthorizationBroker(store, issuer, settings, clock=clock)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, notifier: RecordingNotifier, clock: FrozenClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, notifier and clock into app.state through the same
    wire_services() the real lifespan uses.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), store, notifier=notifier, clock=clock)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


class ApiHarness:
    """Everything an integration test needs: client, store, issuer, notifier, clock."""

    def __init__(self, client: TestClient, store: CredentialStore, notifier: RecordingNotifier, clock: FrozenClock):
        self.client = client
        self.store = store
        self.notifier = notifier
        self.clock = clock

    @property
    def issuer(self) -> TokenIssuer:
        return self.client.app.state.issuer

    def bearer_for(self, principal: Principal) -> dict[str, str]:
        token = self.issuer.issue_bearer_token(principal.id, principal.email, principal.kind)
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness backed by a fresh named shared-memory database.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers, middleware and exception handlers.
    """
    url = f"sqlite:///file:credcore_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = CredentialStore(url)
    notifier = RecordingNotifier()
    clock = FrozenClock(datetime.now(timezone.utc))

    app.router.lifespan_context = _patch_lifespan(store, notifier, clock)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client, store, notifier, clock)

    store.close()
