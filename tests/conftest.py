"""
tests/conftest.py -- Shared test fixtures for the portal auth tests.

This module provides:
  - make_store(): isolated in-memory credential store with the role catalog seeded
  - make_verifier(): CredentialVerifier wired with fast bcrypt and a test key
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient with an admin and a regular user already created

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment must be set before any api/ or core/ import: api.main reads
Settings at import time to configure TrustedHost and CORS.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import timedelta

# CRITICAL: Set before any api/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("DATABASE_URL", "sqlite:///file:test_default?mode=memory&cache=shared&uri=true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.passwords import PasswordHasher
from auth.roles import catalog_roles
from auth.store import UserStore
from auth.tokens import SigningKey, TokenCodec
from auth.verifier import CredentialVerifier
from core.config import get_settings

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "adminpass123"
USER_USERNAME = "testuser"
USER_PASSWORD = "password123"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> UserStore:
    """Create an isolated named shared-memory store with catalog roles seeded.

    Args:
        name: DB name suffix. Defaults to a random one so function-scoped
              fixtures never share state.
    """
    suffix = name or uuid.uuid4().hex
    store = UserStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    store.seed_roles(catalog_roles())
    return store


def make_codec(access: timedelta = timedelta(hours=1), refresh: timedelta = timedelta(hours=7)) -> TokenCodec:
    return TokenCodec(SigningKey(TEST_SECRET), access_ttl=access, refresh_ttl=refresh)


def make_verifier(store: UserStore, max_attempts: int = 5) -> CredentialVerifier:
    return CredentialVerifier(store, make_codec(), PasswordHasher(rounds=4), max_attempts=max_attempts)


def _patch_lifespan(store: UserStore):
    """Return an async context manager that replaces the real lifespan.

    Runs the production service wiring (build_services) around the given
    test store, so tests hit the real codec, verifier and policy.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), store)
        yield

    return test_lifespan


def login(client: TestClient, username: str, password: str) -> dict:
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def verifier(store: UserStore) -> CredentialVerifier:
    return make_verifier(store)


@pytest.fixture
def codec() -> TokenCodec:
    return make_codec()


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str], None, None]:
    """Yield (client, admin_access_token) for API integration tests.

    One TestClient per test module for speed. Two principals exist:
    testadmin (ROLE_ADMIN) and testuser (ROLE_EMPLOYEE).
    """
    store = make_store(f"api_{uuid.uuid4().hex}")
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        verifier: CredentialVerifier = app.state.verifier
        verifier.create_principal(
            ADMIN_USERNAME, ADMIN_PASSWORD, "admin@example.com", roles=["ROLE_ADMIN"], full_name="Test Admin"
        )
        verifier.create_principal(
            USER_USERNAME,
            USER_PASSWORD,
            "testuser@example.com",
            roles=["ROLE_EMPLOYEE"],
            full_name="Test User",
            department="Investigations",
        )
        token = login(client, ADMIN_USERNAME, ADMIN_PASSWORD)["accessToken"]
        yield client, token

    store.close()
