"""
oauth/models.py -- Domain dataclasses for the OAuth authorization flow.

Pattern: Data class (pure data container, zero logic).

Ownership:
  AuthRequest, CompleteAuthorization -- produced and consumed by the
      authorize endpoint, one request lifetime.
  ClientInfo, AuthorizationGrant, AccessToken -- persisted by oauth/store.py.
  TokenSummary -- what unwrap_token() hands to the resource server. It never
      contains the raw token or its hash.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypedDict, Union

Audience = Union[str, list[str], None]


class OAuthProps(TypedDict):
    """Identity attached to a grant and surfaced to MCP tools."""

    userId: str
    email: str
    displayName: str


@dataclass
class AuthRequest:
    response_type: str
    client_id: str
    redirect_uri: str
    scope: list[str] = field(default_factory=list)
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None  # "S256" or "plain"
    resource: list[str] = field(default_factory=list)  # RFC 8707 resource indicators


@dataclass
class ClientInfo:
    """A registered OAuth client.

    client_secret_hash is SHA-256 of the secret issued at registration; None
    for public clients (token_endpoint_auth_method == "none").
    """

    client_id: str
    redirect_uris: list[str]
    client_name: str | None = None
    token_endpoint_auth_method: str = "client_secret_basic"
    client_secret_hash: str | None = None
    created_at: int | None = None


@dataclass
class CompleteAuthorization:
    request: AuthRequest
    user_id: str
    metadata: dict
    scope: list[str]
    props: OAuthProps


@dataclass
class AuthorizationGrant:
    """An issued, not yet redeemed authorization code."""

    code_hash: str
    client_id: str
    user_id: str
    scope: list[str]
    props: OAuthProps
    metadata: dict
    redirect_uri: str
    expires_at: int  # epoch seconds
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    resource: list[str] = field(default_factory=list)
    id: int | None = None


@dataclass
class AccessToken:
    token_hash: str
    client_id: str
    user_id: str
    scope: list[str]
    props: OAuthProps
    audience: Audience
    expires_at: int  # epoch seconds
    created_at: int | None = None


@dataclass
class TokenGrant:
    client_id: str
    scope: list[str]
    props: OAuthProps


@dataclass
class TokenSummary:
    user_id: str
    audience: Audience
    scope: list[str]
    expires_at: int
    grant: TokenGrant
