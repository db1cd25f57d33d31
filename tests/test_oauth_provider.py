"""
tests/test_oauth_provider.py -- Tests for OAuthProvider and the JSON OAuth endpoints.

Provider coroutines are driven with asyncio.run() against a real OAuthStore on
a named in-memory database. The clock is a mutable list so expiry can be
tested without sleeping.

Covers:
  - dynamic registration validation (redirect URI scheme, auth method)
  - authorize request validation (redirect URI, PKCE parameters, public clients)
  - code exchange: PKCE S256, single use, client binding, redirect match, expiry
  - token audience from resource indicators, expired tokens
  - every OAuthStore call runs off the event loop
  - POST /oauth/token, POST /oauth/register and discovery via the full app
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Generator
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from fastapi.testclient import TestClient
from starlette.requests import Request

from asgi import app
from auth.models import User
from auth.passwords import create_password_hash
from conftest import LoopRecordingStore, _patch_lifespan, make_oauth_store, make_user_store
from oauth.helpers import OAuthProtocolError, OAuthRequestError
from oauth.models import CompleteAuthorization
from oauth.provider import OAuthProvider, hash_secret

REDIRECT_URI = "https://client.example/cb"
VERIFIER = "verifier-" + "x" * 50
PROPS = {"userId": "u-1", "email": "user@example.com", "displayName": "user"}


def _query_request(params) -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "https",
            "server": ("app.example", 443),
            "path": "/oauth/authorize",
            "query_string": urlencode(params, doseq=True).encode(),
            "headers": [],
        }
    )


def _basic(client_id: str, secret: str) -> str:
    return "Basic " + base64.b64encode(f"{client_id}:{secret}".encode()).decode()


@pytest.fixture
def clock() -> list[float]:
    return [1_000_000.0]


@pytest.fixture
def provider(clock) -> Generator[OAuthProvider, None, None]:
    store = make_oauth_store()
    yield OAuthProvider(store, code_ttl_seconds=600, token_ttl_seconds=3600, clock=lambda: clock[0])
    store.close()


def _register(provider: OAuthProvider, **metadata) -> dict:
    metadata.setdefault("redirect_uris", [REDIRECT_URI])
    return asyncio.run(provider.register_client(metadata))


def _issue_code(provider: OAuthProvider, client_id: str, **params) -> str:
    query = {"response_type": "code", "client_id": client_id, "redirect_uri": REDIRECT_URI, "state": "st"}
    query.update(params)
    auth_request = asyncio.run(provider.parse_auth_request(_query_request(query)))
    redirect_to = asyncio.run(
        provider.complete_authorization(
            CompleteAuthorization(
                request=auth_request,
                user_id="u-1",
                metadata={"email": "user@example.com", "clientId": client_id},
                scope=["profile", "email"],
                props=PROPS,
            )
        )
    )
    query_out = parse_qs(urlsplit(redirect_to).query)
    assert query_out["state"] == ["st"]
    return query_out["code"][0]


def _exchange(provider: OAuthProvider, form: dict, authorization: str | None = None) -> dict:
    return asyncio.run(provider.exchange_code(form, authorization))


class TestRegistration:
    def test_confidential_client_gets_secret(self, provider) -> None:
        body = _register(provider, client_name="Demo")
        assert body["token_endpoint_auth_method"] == "client_secret_basic"
        assert body["client_secret"]
        assert body["client_secret_expires_at"] == 0
        assert body["client_name"] == "Demo"
        stored = provider.store.get_client(body["client_id"])
        assert stored.client_secret_hash == hash_secret(body["client_secret"])
        assert stored.redirect_uris == [REDIRECT_URI]

    def test_public_client_has_no_secret(self, provider) -> None:
        body = _register(provider, token_endpoint_auth_method="none")
        assert "client_secret" not in body
        assert provider.store.get_client(body["client_id"]).client_secret_hash is None

    @pytest.mark.parametrize(
        "uri",
        ["http://client.example/cb", "ftp://client.example/cb", "https://client.example/cb#frag", "not a url"],
    )
    def test_rejects_unsafe_redirect_uris(self, provider, uri) -> None:
        with pytest.raises(OAuthProtocolError) as exc_info:
            _register(provider, redirect_uris=[uri])
        assert exc_info.value.error == "invalid_redirect_uri"

    @pytest.mark.parametrize("uri", ["http://localhost:8765/cb", "http://127.0.0.1/cb"])
    def test_allows_loopback_http(self, provider, uri) -> None:
        assert _register(provider, redirect_uris=[uri])["redirect_uris"] == [uri]

    def test_rejects_missing_redirect_uris(self, provider) -> None:
        with pytest.raises(OAuthProtocolError) as exc_info:
            _register(provider, redirect_uris=[])
        assert exc_info.value.error == "invalid_redirect_uri"

    def test_rejects_unknown_auth_method(self, provider) -> None:
        with pytest.raises(OAuthProtocolError) as exc_info:
            _register(provider, token_endpoint_auth_method="private_key_jwt")
        assert exc_info.value.error == "invalid_client_metadata"


class TestAuthorizeRequestValidation:
    def test_unregistered_redirect_uri(self, provider) -> None:
        client_id = _register(provider)["client_id"]
        params = {"response_type": "code", "client_id": client_id, "redirect_uri": "https://evil.example/cb"}
        with pytest.raises(OAuthRequestError, match="Invalid redirect URI"):
            asyncio.run(provider.parse_auth_request(_query_request(params)))

    def test_unsupported_response_type(self, provider) -> None:
        client_id = _register(provider)["client_id"]
        params = {"response_type": "token", "client_id": client_id, "redirect_uri": REDIRECT_URI}
        with pytest.raises(OAuthRequestError, match="Unsupported response type"):
            asyncio.run(provider.parse_auth_request(_query_request(params)))

    def test_public_client_requires_pkce(self, provider) -> None:
        client_id = _register(provider, token_endpoint_auth_method="none")["client_id"]
        params = {"response_type": "code", "client_id": client_id, "redirect_uri": REDIRECT_URI}
        with pytest.raises(OAuthRequestError, match="PKCE"):
            asyncio.run(provider.parse_auth_request(_query_request(params)))

    def test_unknown_challenge_method(self, provider) -> None:
        client_id = _register(provider)["client_id"]
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": REDIRECT_URI,
            "code_challenge": "abc",
            "code_challenge_method": "S512",
        }
        with pytest.raises(OAuthRequestError, match="S512"):
            asyncio.run(provider.parse_auth_request(_query_request(params)))

    def test_challenge_method_defaults_to_plain(self, provider) -> None:
        client_id = _register(provider)["client_id"]
        params = {"response_type": "code", "client_id": client_id, "redirect_uri": REDIRECT_URI, "code_challenge": "abc"}
        auth_request = asyncio.run(provider.parse_auth_request(_query_request(params)))
        assert auth_request.code_challenge_method == "plain"

    def test_repeated_resource_parameters_kept(self, provider) -> None:
        client_id = _register(provider)["client_id"]
        params = [
            ("response_type", "code"),
            ("client_id", client_id),
            ("redirect_uri", REDIRECT_URI),
            ("resource", "https://a.example"),
            ("resource", "https://b.example"),
        ]
        auth_request = asyncio.run(provider.parse_auth_request(_query_request(params)))
        assert auth_request.resource == ["https://a.example", "https://b.example"]


class TestCodeExchange:
    def test_public_client_pkce_s256(self, provider) -> None:
        client_id = _register(provider, token_endpoint_auth_method="none")["client_id"]
        code = _issue_code(
            provider,
            client_id,
            code_challenge=create_s256_code_challenge(VERIFIER),
            code_challenge_method="S256",
            resource="https://app.example/mcp",
        )
        body = _exchange(
            provider,
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": VERIFIER,
            },
        )
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 3600
        assert body["scope"] == "profile email"

        summary = asyncio.run(provider.unwrap_token(body["access_token"]))
        assert summary.user_id == "u-1"
        assert summary.audience == "https://app.example/mcp"
        assert summary.grant.props == PROPS
        assert summary.grant.client_id == client_id

    def test_pkce_mismatch_is_invalid_grant(self, provider) -> None:
        client_id = _register(provider, token_endpoint_auth_method="none")["client_id"]
        code = _issue_code(
            provider, client_id, code_challenge=create_s256_code_challenge(VERIFIER), code_challenge_method="S256"
        )
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": "a-different-verifier",
        }
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form)
        assert exc_info.value.error == "invalid_grant"

    def test_code_is_single_use(self, provider) -> None:
        registered = _register(provider)
        code = _issue_code(provider, registered["client_id"])
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
        auth = _basic(registered["client_id"], registered["client_secret"])
        assert _exchange(provider, form, auth)["access_token"]
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form, auth)
        assert exc_info.value.error == "invalid_grant"

    def test_wrong_secret_is_invalid_client(self, provider) -> None:
        registered = _register(provider)
        code = _issue_code(provider, registered["client_id"])
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form, _basic(registered["client_id"], "wrong"))
        assert exc_info.value.error == "invalid_client"
        assert exc_info.value.status_code == 401

    def test_client_secret_post(self, provider) -> None:
        registered = _register(provider, token_endpoint_auth_method="client_secret_post")
        code = _issue_code(provider, registered["client_id"])
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": registered["client_id"],
            "client_secret": registered["client_secret"],
        }
        assert _exchange(provider, form)["access_token"]

    def test_code_bound_to_client(self, provider) -> None:
        first = _register(provider)
        second = _register(provider)
        code = _issue_code(provider, first["client_id"])
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form, _basic(second["client_id"], second["client_secret"]))
        assert exc_info.value.error == "invalid_grant"

    def test_redirect_uri_must_match(self, provider) -> None:
        registered = _register(provider)
        code = _issue_code(provider, registered["client_id"])
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": "https://client.example/other"}
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form, _basic(registered["client_id"], registered["client_secret"]))
        assert exc_info.value.error == "invalid_grant"

    def test_expired_code(self, provider, clock) -> None:
        registered = _register(provider)
        code = _issue_code(provider, registered["client_id"])
        clock[0] += 601
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form, _basic(registered["client_id"], registered["client_secret"]))
        assert exc_info.value.error == "invalid_grant"
        assert provider.store.get_grant(hash_secret(code)) is None

    @pytest.mark.parametrize(
        "form, error",
        [
            ({}, "invalid_request"),
            ({"grant_type": "refresh_token"}, "unsupported_grant_type"),
            ({"grant_type": "authorization_code", "client_id": "missing"}, "invalid_client"),
        ],
    )
    def test_request_errors(self, provider, form, error) -> None:
        with pytest.raises(OAuthProtocolError) as exc_info:
            _exchange(provider, form)
        assert exc_info.value.error == error


class TestTokens:
    def _token(self, provider, **params) -> str:
        registered = _register(provider)
        code = _issue_code(provider, registered["client_id"], **params)
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
        return _exchange(provider, form, _basic(registered["client_id"], registered["client_secret"]))["access_token"]

    def test_no_resource_means_no_audience(self, provider) -> None:
        summary = asyncio.run(provider.unwrap_token(self._token(provider)))
        assert summary.audience is None

    def test_expired_token_unwraps_to_none(self, provider, clock) -> None:
        token = self._token(provider)
        clock[0] += 3600
        assert asyncio.run(provider.unwrap_token(token)) is None
        assert provider.store.get_token(hash_secret(token)) is None

    def test_unknown_token(self, provider) -> None:
        assert asyncio.run(provider.unwrap_token("never-issued")) is None
        assert asyncio.run(provider.unwrap_token("")) is None

    def test_store_is_never_called_on_the_event_loop(self, provider) -> None:
        recorder = LoopRecordingStore(provider.store)
        provider.store = recorder
        token = self._token(provider)
        assert asyncio.run(provider.lookup_client("missing")) is None
        assert asyncio.run(provider.unwrap_token(token)) is not None

        called = {name for name, _ in recorder.calls}
        assert {"create_client", "get_client", "create_grant", "get_grant", "delete_grant", "create_token"} <= called
        assert "get_token" in called
        assert recorder.on_loop() == []

    def test_purge_expired(self, provider, clock) -> None:
        self._token(provider)
        registered = _register(provider)
        _issue_code(provider, registered["client_id"])
        assert provider.store.purge_expired(int(clock[0]) + 7200) == 2


# ---------------------------------------------------------------------------
# Full app with the real provider
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def provider_client() -> Generator[TestClient, None, None]:
    user_store = make_user_store()
    user_store.create_user(
        User(username="owner@example.com", email="owner@example.com", password_hash=create_password_hash("password123"))
    )
    oauth_store = make_oauth_store()
    real = OAuthProvider(oauth_store)
    app.router.lifespan_context = _patch_lifespan(user_store, real, oauth_provider=real)
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client
    oauth_store.close()
    user_store.close()


class TestEndpoints:
    def test_full_authorization_code_flow(self, provider_client) -> None:
        reg = provider_client.post(
            "/oauth/register",
            json={"redirect_uris": [REDIRECT_URI], "token_endpoint_auth_method": "none", "client_name": "CLI"},
        )
        assert reg.status_code == 201
        assert reg.headers["cache-control"] == "no-store"
        client_id = reg.json()["client_id"]

        query = urlencode(
            {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "state": "abc",
                "code_challenge": create_s256_code_challenge(VERIFIER),
                "code_challenge_method": "S256",
                "resource": "http://testserver/mcp",
            }
        )
        page = provider_client.get(f"/oauth/authorize?{query}")
        assert page.status_code == 200
        assert "CLI" in page.text

        approved = provider_client.post(
            f"/oauth/authorize?{query}",
            data={"decision": "approve", "email": "owner@example.com", "password": "password123"},
        )
        assert approved.status_code == 302
        redirect = parse_qs(urlsplit(approved.headers["location"]).query)
        assert redirect["state"] == ["abc"]

        token = provider_client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": redirect["code"][0],
                "client_id": client_id,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": VERIFIER,
            },
        )
        assert token.status_code == 200
        assert token.headers["cache-control"] == "no-store"
        assert token.json()["token_type"] == "bearer"

        summary = asyncio.run(app.state.oauth_provider.unwrap_token(token.json()["access_token"]))
        assert summary.audience == "http://testserver/mcp"
        assert summary.grant.props["email"] == "owner@example.com"

    def test_token_error_envelope(self, provider_client) -> None:
        resp = provider_client.post("/oauth/token", data={"grant_type": "password"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"
        assert "error_description" in resp.json()

    def test_invalid_client_sets_basic_challenge(self, provider_client) -> None:
        resp = provider_client.post("/oauth/token", data={"grant_type": "authorization_code", "client_id": "nope"})
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"].startswith("Basic")

    def test_register_rejects_http_redirect(self, provider_client) -> None:
        resp = provider_client.post("/oauth/register", json={"redirect_uris": ["http://client.example/cb"]})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_redirect_uri"

    def test_register_rejects_non_object(self, provider_client) -> None:
        resp = provider_client.post("/oauth/register", json=["x"])
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"

    def test_authorization_server_metadata(self, provider_client) -> None:
        body = provider_client.get("/.well-known/oauth-authorization-server").json()
        assert body["issuer"] == "http://testserver"
        assert body["token_endpoint"] == "http://testserver/oauth/token"
        assert body["registration_endpoint"] == "http://testserver/oauth/register"
        assert body["code_challenge_methods_supported"] == ["S256", "plain"]
        assert body["scopes_supported"] == ["profile", "email"]
