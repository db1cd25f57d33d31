"""
oauth/provider.py -- OAuth 2.0 authorization server (authorization code + PKCE).

OAuthProvider implements the OAuthHelpers protocol used by the authorize
endpoint and the MCP gate, plus the two endpoints only the API layer needs:
exchange_code() for POST /oauth/token and register_client() for
POST /oauth/register.

Security design decisions:
  [O1] Codes, tokens and client secrets are random (secrets.token_urlsafe) and
       persisted only as SHA-256 digests. See oauth/store.py.

  [O2] A redirect URI is accepted only if it exactly matches one registered
       for the client. parse_auth_request() raises before anything is ever
       redirected to an unregistered URI.

  [O3] Public clients (token_endpoint_auth_method == "none") must use PKCE.
       Confidential clients may, and if a challenge was sent the verifier is
       always checked.

  [O4] Codes are single use. The grant row is deleted before the token is
       issued, and only the request whose delete removed the row proceeds.

  [O5] Dynamic registration accepts https redirect URIs, or http only on a
       loopback host (native and CLI clients).

  [O6] OAuthStore is synchronous SQLAlchemy. Every store call from a
       coroutine goes through run_in_threadpool.

Layer rule: may import from core/ and auth/, never from api/, web/, or
toolserver/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from urllib.parse import unquote, urlsplit

from authlib.oauth2.rfc7636 import create_s256_code_challenge
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from core.config import OAUTH_SCOPES
from oauth.helpers import OAuthProtocolError, OAuthRequestError, add_query_params
from oauth.models import (
    AccessToken,
    Audience,
    AuthorizationGrant,
    AuthRequest,
    ClientInfo,
    CompleteAuthorization,
    TokenGrant,
    TokenSummary,
)
from oauth.store import OAuthStore

logger = logging.getLogger("epicflare.oauth")

CODE_CHALLENGE_METHODS = ("S256", "plain")
TOKEN_ENDPOINT_AUTH_METHODS = ("client_secret_basic", "client_secret_post", "none")
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def hash_secret(value: str) -> str:
    """SHA-256 hex digest used as the storage key for codes, tokens and secrets."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _audience_from_resource(resource: list[str]) -> Audience:
    if not resource:
        return None
    if len(resource) == 1:
        return resource[0]
    return list(resource)


def _is_allowed_redirect_uri(uri: str) -> bool:
    parts = urlsplit(uri)
    if parts.fragment or not parts.hostname:
        return False
    if parts.scheme == "https":
        return True
    return parts.scheme == "http" and parts.hostname in _LOOPBACK_HOSTS


class OAuthProvider:
    """SQLAlchemy-backed OAuth helper.

    clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        store: OAuthStore,
        code_ttl_seconds: int = 600,
        token_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.code_ttl_seconds = code_ttl_seconds
        self.token_ttl_seconds = token_ttl_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # OAuthHelpers protocol
    # ------------------------------------------------------------------

    async def parse_auth_request(self, request: Request) -> AuthRequest:
        params = request.query_params
        response_type = params.get("response_type", "")
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        if response_type != "code":
            raise OAuthRequestError("Unsupported response type. Only 'code' is supported.")
        if not client_id or not redirect_uri:
            raise OAuthRequestError("Invalid OAuth request. Client ID and redirect URI are required.")

        client = await run_in_threadpool(self.store.get_client, client_id)
        if client is None:
            raise OAuthRequestError("Unknown OAuth client.")
        if redirect_uri not in client.redirect_uris:
            raise OAuthRequestError("Invalid redirect URI for this client.")  # [O2]

        code_challenge = params.get("code_challenge") or None
        code_challenge_method = params.get("code_challenge_method") or None
        if code_challenge:
            code_challenge_method = code_challenge_method or "plain"
            if code_challenge_method not in CODE_CHALLENGE_METHODS:
                raise OAuthRequestError(f"Unsupported code challenge method: {code_challenge_method}")
        elif code_challenge_method:
            raise OAuthRequestError("code_challenge_method given without code_challenge.")
        elif client.token_endpoint_auth_method == "none":
            raise OAuthRequestError("Public clients must use PKCE (code_challenge is required).")  # [O3]

        return AuthRequest(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=params.get("scope", "").split(),
            state=params.get("state") or None,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            resource=params.getlist("resource"),
        )

    async def lookup_client(self, client_id: str) -> ClientInfo | None:
        return await run_in_threadpool(self.store.get_client, client_id)

    async def complete_authorization(self, options: CompleteAuthorization) -> str:
        request = options.request
        code = secrets.token_urlsafe(32)
        grant = AuthorizationGrant(
            code_hash=hash_secret(code),
            client_id=request.client_id,
            user_id=options.user_id,
            scope=list(options.scope),
            props=options.props,
            metadata=options.metadata,
            redirect_uri=request.redirect_uri,
            expires_at=self._now() + self.code_ttl_seconds,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            resource=list(request.resource),
        )
        await run_in_threadpool(self.store.create_grant, grant)
        logger.info("Authorization code issued client_id=%s", request.client_id)
        return add_query_params(request.redirect_uri, {"code": code, "state": request.state})

    async def unwrap_token(self, token: str) -> TokenSummary | None:
        if not token:
            return None
        return await run_in_threadpool(self._lookup_token, token)

    def _lookup_token(self, token: str) -> TokenSummary | None:
        token_hash = hash_secret(token)
        record = self.store.get_token(token_hash)
        if record is None:
            return None
        if record.expires_at <= self._now():
            self.store.delete_token(token_hash)
            return None
        return TokenSummary(
            user_id=record.user_id,
            audience=record.audience,
            scope=record.scope,
            expires_at=record.expires_at,
            grant=TokenGrant(client_id=record.client_id, scope=record.scope, props=record.props),
        )

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def _authenticate_client(self, form: Mapping[str, str], authorization: str | None) -> ClientInfo:
        client_id = form.get("client_id") or None
        client_secret = form.get("client_secret") or None
        used_basic = False
        if authorization and authorization[:6].lower() == "basic ":
            try:
                decoded = base64.b64decode(authorization[6:].strip()).decode("utf-8")
            except ValueError:
                raise OAuthProtocolError("invalid_client", "Malformed Basic authorization header.", 401)
            basic_id, sep, basic_secret = decoded.partition(":")
            if not sep:
                raise OAuthProtocolError("invalid_client", "Malformed Basic authorization header.", 401)
            client_id, client_secret = unquote(basic_id), unquote(basic_secret)
            used_basic = True

        if not client_id:
            raise OAuthProtocolError("invalid_client", "Client authentication failed.", 401)
        client = self.store.get_client(client_id)
        if client is None:
            raise OAuthProtocolError("invalid_client", "Client authentication failed.", 401)

        method = client.token_endpoint_auth_method
        if method == "none":
            return client
        if method == "client_secret_basic" and not used_basic:
            raise OAuthProtocolError("invalid_client", "Client must authenticate with HTTP Basic.", 401)
        if not client_secret or client.client_secret_hash is None:
            raise OAuthProtocolError("invalid_client", "Client authentication failed.", 401)
        if not hmac.compare_digest(hash_secret(client_secret), client.client_secret_hash):
            raise OAuthProtocolError("invalid_client", "Client authentication failed.", 401)
        return client

    @staticmethod
    def _verify_pkce(grant: AuthorizationGrant, verifier: str | None) -> None:
        if not grant.code_challenge:
            return
        if not verifier:
            raise OAuthProtocolError("invalid_grant", "code_verifier is required.")
        if grant.code_challenge_method == "S256":
            expected = create_s256_code_challenge(verifier)
        else:
            expected = verifier
        if not hmac.compare_digest(expected, grant.code_challenge):
            raise OAuthProtocolError("invalid_grant", "PKCE verification failed.")

    async def exchange_code(self, form: Mapping[str, str], authorization: str | None = None) -> dict:
        """Redeem an authorization code. Returns the RFC 6749 token response body."""
        return await run_in_threadpool(self._redeem_code, form, authorization)

    def _redeem_code(self, form: Mapping[str, str], authorization: str | None) -> dict:
        grant_type = form.get("grant_type")
        if not grant_type:
            raise OAuthProtocolError("invalid_request", "grant_type is required.")
        if grant_type != "authorization_code":
            raise OAuthProtocolError("unsupported_grant_type", f"Unsupported grant type: {grant_type}")

        client = self._authenticate_client(form, authorization)

        code = form.get("code")
        if not code:
            raise OAuthProtocolError("invalid_request", "code is required.")
        code_hash = hash_secret(code)
        grant = self.store.get_grant(code_hash)
        if grant is None:
            raise OAuthProtocolError("invalid_grant", "Invalid or expired authorization code.")
        if grant.expires_at <= self._now():
            self.store.delete_grant(code_hash)
            raise OAuthProtocolError("invalid_grant", "Invalid or expired authorization code.")
        if grant.client_id != client.client_id:
            raise OAuthProtocolError("invalid_grant", "Authorization code was issued to another client.")
        if form.get("redirect_uri") != grant.redirect_uri:
            raise OAuthProtocolError("invalid_grant", "redirect_uri does not match the authorization request.")
        if client.token_endpoint_auth_method == "none" and not grant.code_challenge:
            raise OAuthProtocolError("invalid_grant", "Public clients must use PKCE.")
        self._verify_pkce(grant, form.get("code_verifier"))

        # [O4] only the caller that removes the row may issue a token
        if not self.store.delete_grant(code_hash):
            raise OAuthProtocolError("invalid_grant", "Invalid or expired authorization code.")

        access_token = secrets.token_urlsafe(32)
        now = self._now()
        self.store.create_token(
            AccessToken(
                token_hash=hash_secret(access_token),
                client_id=client.client_id,
                user_id=grant.user_id,
                scope=grant.scope,
                props=grant.props,
                audience=_audience_from_resource(grant.resource),
                expires_at=now + self.token_ttl_seconds,
                created_at=now,
            )
        )
        logger.info("Access token issued client_id=%s", client.client_id)
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": self.token_ttl_seconds,
            "scope": " ".join(grant.scope),
        }

    # ------------------------------------------------------------------
    # Dynamic client registration (RFC 7591)
    # ------------------------------------------------------------------

    async def register_client(self, metadata: Mapping) -> dict:
        redirect_uris = metadata.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            raise OAuthProtocolError("invalid_redirect_uri", "redirect_uris must be a non-empty list.")
        for uri in redirect_uris:
            if not isinstance(uri, str) or not _is_allowed_redirect_uri(uri):
                raise OAuthProtocolError(
                    "invalid_redirect_uri",
                    f"Redirect URI must use https or http on a loopback host: {uri}",
                )  # [O5]

        method = metadata.get("token_endpoint_auth_method") or "client_secret_basic"
        if method not in TOKEN_ENDPOINT_AUTH_METHODS:
            raise OAuthProtocolError(
                "invalid_client_metadata", f"Unsupported token_endpoint_auth_method: {method}"
            )
        client_name = metadata.get("client_name")
        if client_name is not None and not isinstance(client_name, str):
            raise OAuthProtocolError("invalid_client_metadata", "client_name must be a string.")

        client_id = secrets.token_urlsafe(16)
        client_secret = None if method == "none" else secrets.token_urlsafe(32)
        now = self._now()
        await run_in_threadpool(
            self.store.create_client,
            ClientInfo(
                client_id=client_id,
                redirect_uris=list(redirect_uris),
                client_name=client_name,
                token_endpoint_auth_method=method,
                client_secret_hash=hash_secret(client_secret) if client_secret else None,
                created_at=now,
            )
        )
        logger.info("OAuth client registered client_id=%s method=%s", client_id, method)

        body = {
            "client_id": client_id,
            "client_id_issued_at": now,
            "redirect_uris": list(redirect_uris),
            "token_endpoint_auth_method": method,
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
        }
        if client_name is not None:
            body["client_name"] = client_name
        if client_secret:
            body["client_secret"] = client_secret
            body["client_secret_expires_at"] = 0
        return body


def build_authorization_server_metadata(origin: str) -> dict:
    """RFC 8414 metadata for this server, with every endpoint under origin."""
    return {
        "issuer": origin,
        "authorization_endpoint": f"{origin}/oauth/authorize",
        "token_endpoint": f"{origin}/oauth/token",
        "registration_endpoint": f"{origin}/oauth/register",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": list(CODE_CHALLENGE_METHODS),
        "token_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
        "scopes_supported": list(OAUTH_SCOPES),
    }
