"""
tests/conftest.py -- Shared test fixtures for the Skillmap gateway tests.

This module provides:
  - FakeIdentityProvider: scripted stand-in for the upstream identity provider
  - kv / engine / user_store / api_key_store: isolated stores per test
  - gateway: TestClient over the real app with a patched lifespan that wires
    test stores and the fake provider through api.main.wire_services()
  - register_client() / authorize_params(): helpers for OAuth flow tests
  - issue_tokens(): an access/refresh pair without the browser round trip

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture appends a random suffix so tests never see each other's rows.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
SECURE_COOKIES is turned off because TestClient talks plain http and would
otherwise never send the session cookie back.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse

# CRITICAL: Set env before any auth/core import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECURE_COOKIES", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import wire_services
from asgi import app
from auth.errors import IdentityProviderError
from auth.models import AuthContext, AuthRequest
from auth.pkce import PkceManager
from auth.ports import IdpAuthentication, IdpUser
from auth.store import ApiKeyStore, UserStore, create_auth_engine
from cache.store import MemoryKeyValueStore
from core.config import get_settings
from core.limiter import limiter

# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


@dataclass
class FakeIdentityProvider:
    """Scripted IdentityProvider.

    codes:          code -> IdpAuthentication returned by authenticate_with_code
    refresh_error:  when set, authenticate_with_refresh_token raises it
    refresh_delay:  seconds the refresh call sleeps (to widen race windows)
    """

    codes: dict[str, IdpAuthentication] = field(default_factory=dict)
    refresh_error: Optional[Exception] = None
    refresh_delay: float = 0.0
    refresh_calls: list[str] = field(default_factory=list)
    code_calls: list[tuple[str, str]] = field(default_factory=list)

    def add_code(self, code: str, user_id: str, email: str, access_token: str = "opaque", refresh_token: str = "rt-1"):
        self.codes[code] = IdpAuthentication(
            access_token=access_token,
            refresh_token=refresh_token,
            user=IdpUser(id=user_id, email=email),
        )

    def get_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        params = {
            "redirect_uri": redirect_uri,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"https://idp.test/authorize?{urlencode(params)}"

    async def authenticate_with_code(self, code: str, code_verifier: str) -> IdpAuthentication:
        self.code_calls.append((code, code_verifier))
        if code not in self.codes:
            raise IdentityProviderError("invalid_grant")
        return self.codes[code]

    async def authenticate_with_refresh_token(self, refresh_token: str) -> str:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return f"{refresh_token}-rotated{len(self.refresh_calls)}"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


def _memory_db_url(name: str) -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture()
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture()
def engine():
    engine = create_auth_engine(_memory_db_url("auth"))
    yield engine
    engine.dispose()


@pytest.fixture()
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture()
def api_key_store(engine) -> ApiKeyStore:
    return ApiKeyStore(engine)


@pytest.fixture()
def fake_idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


# ---------------------------------------------------------------------------
# Application fixture
# ---------------------------------------------------------------------------


@dataclass
class Gateway:
    client: TestClient
    state: Any
    idp: FakeIdentityProvider


def _patch_lifespan(kv, engine, idp):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores into app.state through the same wire_services()
    the production lifespan uses, so routes exercise the real object graph.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app.state, get_settings(), kv, kv, engine, idp)
        yield

    return test_lifespan


@pytest.fixture()
def gateway(kv, engine, fake_idp) -> Generator[Gateway, None, None]:
    """Yield a Gateway around a TestClient with follow_redirects=False.

    follow_redirects=False is essential: tests assert on redirect Location
    headers, which are invisible once the client follows the redirect.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(kv, engine, fake_idp)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Gateway(client=client, state=app.state, idp=fake_idp)


# ---------------------------------------------------------------------------
# OAuth helpers
# ---------------------------------------------------------------------------

REDIRECT_URI = "http://127.0.0.1:33418/oauth/callback"


def register_client(client: TestClient, redirect_uri: str = REDIRECT_URI) -> str:
    """Register a public MCP client and return its client_id."""
    resp = client.post("/register", json={"redirect_uris": [redirect_uri], "client_name": "Test MCP Client"})
    assert resp.status_code == 201, resp.text
    return resp.json()["client_id"]


def issue_tokens(state, user_id: str, email: str) -> dict:
    """Mint an OAuth token pair for user_id straight through the provider, skipping the browser.

    The returned token response also carries the client_id it was issued to.
    """
    provider = state.oauth_provider
    client = provider.register_client([REDIRECT_URI], client_name="Direct")
    verifier, challenge = PkceManager.generate_challenge()
    request = AuthRequest(
        client_id=client.client_id,
        redirect_uri=REDIRECT_URI,
        scope=["mcp"],
        code_challenge=challenge,
        code_challenge_method="S256",
    )
    location = provider.complete_authorization(request, user_id, request.scope, AuthContext(user_id=user_id, email=email))
    code = parse_qs(urlparse(location).query)["code"][0]
    tokens = provider.exchange_authorization_code(client.client_id, code, REDIRECT_URI, verifier)
    return {**tokens, "client_id": client.client_id}


def authorize_params(client_id: str, state: str = "client-state", redirect_uri: str = REDIRECT_URI) -> tuple[dict, str]:
    """Build /authorize query params with a fresh PKCE pair. Returns (params, verifier)."""
    verifier, challenge = PkceManager.generate_challenge()
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "scope": "mcp",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    return params, verifier
