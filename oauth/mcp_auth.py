"""
oauth/mcp_auth.py -- Bearer token gate in front of the MCP endpoint.

McpAuthMiddleware is a pure ASGI middleware. Requests for /mcp never reach
the FastAPI router: they are authenticated here and, on success, handed
unchanged to the wrapped MCP ASGI app. Every other path passes straight
through to the application.

Failure modes all collapse to the same response: 401, empty body, and a
WWW-Authenticate challenge pointing at the protected resource metadata so an
MCP client can discover the authorization server (RFC 9728). The response
never says whether the token was missing, unknown, expired or issued for a
different audience.

Audience rule: a token with no audience is accepted. Otherwise one of its
audience values must be this origin or this origin + "/mcp".

Layer rule: may import from core/ and auth/, never from api/, web/, or
toolserver/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from auth.dependencies import request_origin
from core.config import OAUTH_SCOPES
from oauth.helpers import OAuthHelpers
from oauth.models import Audience, OAuthProps

logger = logging.getLogger("epicflare.mcp")

MCP_RESOURCE_PATH = "/mcp"
PROTECTED_RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"


@dataclass(frozen=True)
class McpContext:
    """What a tool call knows about its caller. Stored on request.state.mcp_context."""

    base_url: str
    user: OAuthProps | None = None


def build_protected_resource_metadata(origin: str) -> dict:
    return {
        "resource": f"{origin}{MCP_RESOURCE_PATH}",
        "authorization_servers": [origin],
        "scopes_supported": list(OAUTH_SCOPES),
    }


def build_www_authenticate_header(origin: str) -> str:
    value = f'Bearer resource_metadata="{origin}{PROTECTED_RESOURCE_METADATA_PATH}"'
    if OAUTH_SCOPES:
        value += f' scope="{" ".join(OAUTH_SCOPES)}"'
    return value


def audience_matches(audience: Audience, origin: str) -> bool:
    if not audience:
        return True
    allowed = audience if isinstance(audience, list) else [audience]
    resource = f"{origin}{MCP_RESOURCE_PATH}"
    return any(value == origin or value == resource for value in allowed)


def is_mcp_path(path: str) -> bool:
    return path == MCP_RESOURCE_PATH or path.startswith(MCP_RESOURCE_PATH + "/")


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if not header or not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :].strip() or None


class McpAuthMiddleware:
    """ASGI middleware that authenticates /mcp and routes it to mcp_app.

    The OAuth helper is read from app.state.oauth_helper on every request, so
    it is whatever the lifespan installed (or a test fake).
    """

    def __init__(self, app: ASGIApp, mcp_app: ASGIApp) -> None:
        self.app = app
        self.mcp_app = mcp_app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not is_mcp_path(scope["path"]):
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        origin = request_origin(request)
        context = await self._authenticate(request, origin)
        if context is None:
            response = Response(
                status_code=401,
                headers={"WWW-Authenticate": build_www_authenticate_header(origin)},
            )
            await response(scope, receive, send)
            return

        request.state.mcp_context = context
        await self.mcp_app(scope, receive, send)

    async def _authenticate(self, request: Request, origin: str) -> McpContext | None:
        token = _bearer_token(request)
        if token is None:
            return None
        helper: OAuthHelpers | None = getattr(request.app.state, "oauth_helper", None)
        if helper is None:
            logger.warning("MCP request rejected: no OAuth helper configured")
            return None
        summary = await helper.unwrap_token(token)
        if summary is None:
            return None
        if not audience_matches(summary.audience, origin):
            logger.info("MCP token rejected for audience mismatch origin=%s", origin)
            return None
        return McpContext(base_url=origin, user=summary.grant.props)
