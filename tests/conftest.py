"""
tests/conftest.py -- Shared test fixtures for Storefront Identity.

This module provides:
  - engine:   isolated named shared-memory SQLite engine per test
  - state:    the full service graph (stores, cache, directory, issuer, session)
              wired onto a plain namespace, for unit tests without HTTP
  - client:   TestClient over the real FastAPI app with a patched lifespan
  - FakeIdentityProvider: provider adapter that maps known tokens to emails

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread.

The client talks to https://testserver so the Secure refresh cookie is stored
and sent back like a browser would.

Environment must be set before any core/auth import: DEBUG lets get_settings()
auto-generate SECRET_KEY, BCRYPT_ROUNDS=4 keeps hashing fast, and the rate
limiter is off because tests log in many times from one address.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, wire_services
from auth.models import Role, User
from auth.oauth import IdentityProvider
from auth.store import open_engine
from cache.store import TTLCache
from core.config import get_settings
from core.errors import AdapterError

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeIdentityProvider(IdentityProvider):
    """Resolves tokens from a fixed mapping; unknown tokens fail like a provider 401."""

    name = "yandex"
    label = "Yandex"

    def __init__(self, identities: dict[str, str]) -> None:
        super().__init__(session=MagicMock())
        self.identities = identities
        self.calls: list[str] = []

    def resolve_identity(self, oauth_token: str) -> str:
        self.calls.append(oauth_token)
        if oauth_token not in self.identities:
            raise AdapterError("fake: provider rejected token", provider=self.name)
        return self.identities[oauth_token]


PROVIDER_IDENTITIES = {"ya-good-token": "shopper@yandex.ru"}

# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


def _memory_url() -> str:
    return f"sqlite:///file:identity_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = open_engine(_memory_url())
    yield eng
    eng.dispose()


@pytest.fixture
def state(engine: Engine) -> Generator[SimpleNamespace, None, None]:
    """Service graph identical to the app's, without HTTP."""
    ns = SimpleNamespace()
    cache = TTLCache(default_ttl=get_settings().access_token_expire_seconds)
    wire_services(ns, engine, cache, get_settings(), {"yandex": FakeIdentityProvider(PROVIDER_IDENTITIES)})
    yield ns
    cache.close()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, cache: TTLCache, providers: dict[str, IdentityProvider]):
    """Return a lifespan that wires test resources into app.state.

    The authlib registry is replaced with a MagicMock so no provider
    discovery document is ever fetched.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app.state, engine, cache, get_settings(), providers)
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture
def client(engine: Engine) -> Generator[TestClient, None, None]:
    cache = TTLCache(default_ttl=get_settings().access_token_expire_seconds)
    providers = {"yandex": FakeIdentityProvider(PROVIDER_IDENTITIES)}
    app.router.lifespan_context = _patch_lifespan(engine, cache, providers)

    with TestClient(app, base_url="https://testserver", raise_server_exceptions=True) as c:
        yield c

    cache.close()


def _bearer(client: TestClient, user: User) -> dict[str, str]:
    token = client.app.state.issuer.issue_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client: TestClient) -> dict[str, str]:
    """Authorization header for a freshly created ADMIN account."""
    admin = client.app.state.directory.upsert_by_email(
        "admin@shop.test",
        password="adminpass",
        roles=[Role.USER.value, Role.ADMIN.value],
    )
    return _bearer(client, admin)


@pytest.fixture
def user_headers(client: TestClient) -> dict[str, str]:
    """Authorization header for a plain USER account."""
    user = client.app.state.directory.upsert_by_email("plain@shop.test", password="plainpass")
    return _bearer(client, user)
