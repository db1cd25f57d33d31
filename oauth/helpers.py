"""
oauth/helpers.py -- The OAuth helper interface and its error types.

The authorize endpoint and the MCP gate only ever talk to an OAuthHelpers
object stored on app.state.oauth_helper. OAuthProvider (oauth/provider.py) is
the production implementation; tests substitute small in-memory fakes with
the same four coroutines.

Errors:
  OAuthRequestError   -- the authorization request itself is unusable (bad
                         client, unregistered redirect URI, bad PKCE params).
                         Rendered as an error page, never redirected, because
                         the redirect URI is not trustworthy.
  OAuthProtocolError  -- token and registration endpoint failures. Carries
                         the RFC 6749 / RFC 7591 error code and HTTP status.
"""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from starlette.requests import Request

from core.config import OAUTH_SCOPES
from oauth.models import AuthRequest, ClientInfo, CompleteAuthorization, TokenSummary

logger = logging.getLogger("epicflare.oauth")


class OAuthRequestError(Exception):
    """The authorization request failed validation."""


class OAuthProtocolError(Exception):
    def __init__(self, error: str, description: str, status_code: int = 400) -> None:
        super().__init__(description)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class OAuthHelpers(Protocol):
    async def parse_auth_request(self, request: Request) -> AuthRequest:
        """Build an AuthRequest from the request query string.

        Raises OAuthRequestError when the request is malformed or the
        redirect URI is not registered for the client.
        """
        ...

    async def lookup_client(self, client_id: str) -> ClientInfo | None: ...

    async def complete_authorization(self, options: CompleteAuthorization) -> str:
        """Issue an authorization code and return the URL to redirect to."""
        ...

    async def unwrap_token(self, token: str) -> TokenSummary | None: ...


def add_query_params(url: str, params: dict[str, str | None]) -> str:
    """Return url with params set, keeping the rest of any query it already has.

    A key already present in url is replaced, not repeated. None values are
    skipped so optional parameters (state) can be passed unconditionally.
    """
    parts = urlsplit(url)
    updates = {key: value for key, value in params.items() if value is not None}
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key not in updates]
    query.extend(updates.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


# ---------------------------------------------------------------------------
# Authorize request resolution (shared by the HTML and JSON authorize routes)
# ---------------------------------------------------------------------------


async def resolve_auth_request(helper: OAuthHelpers | None, request: Request) -> tuple[AuthRequest, ClientInfo]:
    """Parse the authorize query and look up its client.

    Every failure raises OAuthRequestError with a message fit for the user;
    unexpected helper errors are logged and reported generically.
    The caller must not redirect anywhere on failure.
    """
    if helper is None:
        raise OAuthRequestError("OAuth is not configured.")
    try:
        auth_request = await helper.parse_auth_request(request)
        if not auth_request.client_id or not auth_request.redirect_uri:
            raise OAuthRequestError("Invalid OAuth request. Client ID and redirect URI are required.")
        client = await helper.lookup_client(auth_request.client_id)
    except OAuthRequestError:
        raise
    except Exception as exc:
        logger.exception("OAuth helper failed while parsing an authorize request")
        raise OAuthRequestError("Unable to parse OAuth request.") from exc
    if client is None:
        raise OAuthRequestError("Unknown OAuth client.")
    return auth_request, client


def resolve_scopes(requested: list[str]) -> list[str]:
    """Effective scopes: all supported scopes when none were requested.

    Raises OAuthRequestError naming every unsupported scope.
    """
    if not requested:
        return list(OAUTH_SCOPES)
    invalid = [scope for scope in requested if scope not in OAUTH_SCOPES]
    if invalid:
        raise OAuthRequestError(f"Unsupported scopes requested: {', '.join(invalid)}")
    return list(requested)
