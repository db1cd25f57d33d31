"""
tests/conftest.py -- Shared test fixtures for epicflare integration tests.

This module provides:
  - make_user_store() / make_oauth_store(): isolated in-memory databases
  - LoopRecordingStore: store proxy that flags calls made on the event loop
  - FakeOAuthHelpers: in-memory OAuthHelpers double that records calls
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - client: TestClient (follow_redirects=False) over the full ASGI app

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any app import so get_settings()
picks them up on its first (cached) call.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("COOKIE_SECRET", "test-cookie-secret-0123456789abcdef0123456789")
# Generous limit so the suite never trips the per-IP login limiter.
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.sessions import SessionCookieCodec
from auth.store import UserStore
from oauth.helpers import OAuthRequestError, add_query_params
from oauth.models import AuthRequest, ClientInfo, CompleteAuthorization, TokenGrant, TokenSummary
from oauth.store import OAuthStore

TEST_COOKIE_SECRET = os.environ["COOKIE_SECRET"]

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_user_store() -> UserStore:
    """A UserStore on a fresh named shared-memory database."""
    return UserStore(db_url=_memory_url("test_users"))


def make_oauth_store() -> OAuthStore:
    return OAuthStore(db_url=_memory_url("test_oauth"))


# ---------------------------------------------------------------------------
# Event loop guard
# ---------------------------------------------------------------------------


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class LoopRecordingStore:
    """Wraps a store and records, per method call, whether it ran on the event loop.

    Worker threads have no running loop, so any True in calls means a
    synchronous database call blocked the loop.
    """

    def __init__(self, store) -> None:
        self._store = store
        self.calls: list[tuple[str, bool]] = []

    def __getattr__(self, name: str):
        attr = getattr(self._store, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            self.calls.append((name, _on_event_loop()))
            return attr(*args, **kwargs)

        return call

    def on_loop(self) -> list[str]:
        return [name for name, on_loop in self.calls if on_loop]


# ---------------------------------------------------------------------------
# OAuth helper double
# ---------------------------------------------------------------------------


class FakeOAuthHelpers:
    """In-memory OAuthHelpers.

    parse_auth_request mirrors the real provider's validation closely enough
    for route tests: unknown clients and unregistered redirect URIs raise
    OAuthRequestError. complete_authorization records its argument and
    returns redirect_uri?code=...&state=... .
    """

    def __init__(self) -> None:
        self.clients: dict[str, ClientInfo] = {}
        self.tokens: dict[str, TokenSummary] = {}
        self.completed: list[CompleteAuthorization] = []

    def add_client(self, client_id: str, redirect_uri: str, client_name: str | None = None) -> ClientInfo:
        client = ClientInfo(client_id=client_id, redirect_uris=[redirect_uri], client_name=client_name)
        self.clients[client_id] = client
        return client

    def add_token(self, token: str, *, audience=None, props=None) -> None:
        props = props or {"userId": "u1", "email": "user@example.com", "displayName": "user"}
        self.tokens[token] = TokenSummary(
            user_id=props["userId"],
            audience=audience,
            scope=["profile", "email"],
            expires_at=0,
            grant=TokenGrant(client_id="client-1", scope=["profile", "email"], props=props),
        )

    async def parse_auth_request(self, request) -> AuthRequest:
        params = request.query_params
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        client = self.clients.get(client_id)
        if client is not None and redirect_uri and redirect_uri not in client.redirect_uris:
            raise OAuthRequestError("Invalid redirect URI for this client.")
        return AuthRequest(
            response_type=params.get("response_type", "code"),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=params.get("scope", "").split(),
            state=params.get("state") or None,
            code_challenge=params.get("code_challenge") or None,
            code_challenge_method=params.get("code_challenge_method") or None,
            resource=params.getlist("resource"),
        )

    async def lookup_client(self, client_id: str) -> ClientInfo | None:
        return self.clients.get(client_id)

    async def complete_authorization(self, options: CompleteAuthorization) -> str:
        self.completed.append(options)
        return add_query_params(
            options.request.redirect_uri,
            {"code": f"code-{len(self.completed)}", "state": options.request.state},
        )

    async def unwrap_token(self, token: str) -> TokenSummary | None:
        return self.tokens.get(token)


# ---------------------------------------------------------------------------
# Lifespan patching
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, oauth_helper, oauth_provider=None, mailer=None):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test objects into app.state so TestClient routes see
    isolated databases and fakes. The MCP session manager is not started;
    tests that reach /mcp swap in a stub MCP app instead.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.sessions = SessionCookieCodec(TEST_COOKIE_SECRET, 3600)
        app.state.user_store = user_store
        app.state.oauth_helper = oauth_helper
        app.state.oauth_provider = oauth_provider
        app.state.mailer = mailer or MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store()
    yield store
    store.close()


@pytest.fixture(scope="module")
def fake_oauth() -> FakeOAuthHelpers:
    helper = FakeOAuthHelpers()
    helper.add_client("client-1", "https://cb.example/x", client_name="Epicflare Demo")
    return helper


@pytest.fixture(scope="module")
def mailer() -> MagicMock:
    mock = MagicMock()
    mock.send_email.return_value = True
    return mock


@pytest.fixture(scope="module")
def client(user_store, fake_oauth, mailer) -> Generator[TestClient, None, None]:
    """TestClient over the full app with the fake OAuth helper.

    follow_redirects=False so tests can assert on Location headers.
    """
    app.router.lifespan_context = _patch_lifespan(user_store, fake_oauth, mailer=mailer)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client
