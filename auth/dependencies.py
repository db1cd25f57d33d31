"""
auth/dependencies.py -- Request-level helpers shared by api/ and web/.

try_get_session() is the soft session lookup (returns None on failure).
is_secure_request() decides the cookie Secure flag.
request_origin() is the scheme://host the client used -- the MCP gate checks
token audiences against it and the OAuth metadata advertises it.

Layer rule: no imports from web/, oauth/, or toolserver/. Request objects come
from starlette so this module works for plain ASGI middleware as well as
FastAPI routes.
"""

from __future__ import annotations

from starlette.requests import Request

from auth.models import AuthSession
from auth.sessions import SessionCookieCodec


def _normalize_proto(value: str) -> str:
    return value.strip().strip('"').lower()


def _forwarded_proto(request: Request) -> str | None:
    """Return the proto reported by a reverse proxy, if any.

    Checks the standard Forwarded header (RFC 7239) first, then the de facto
    X-Forwarded-Proto. Only the first hop is considered.
    """
    forwarded = request.headers.get("forwarded")
    if forwarded:
        for entry in forwarded.split(","):
            for pair in entry.split(";"):
                key, sep, raw_value = pair.partition("=")
                if not sep or not raw_value:
                    continue
                if key.strip().lower() == "proto":
                    return _normalize_proto(raw_value)
    x_forwarded_proto = request.headers.get("x-forwarded-proto")
    if x_forwarded_proto:
        return _normalize_proto(x_forwarded_proto.split(",")[0])
    return None


def is_secure_request(request: Request) -> bool:
    """True when the client connection is HTTPS (directly or behind a proxy)."""
    proto = _forwarded_proto(request)
    if proto:
        return proto == "https"
    return request.url.scheme == "https"


def request_origin(request: Request) -> str:
    """scheme://host[:port] as the client sees it, no trailing slash.

    The scheme follows the same proxy rule as is_secure_request().
    """
    scheme = _forwarded_proto(request) or request.url.scheme
    return f"{scheme}://{request.url.netloc}"


def try_get_session(request: Request) -> AuthSession | None:
    """Return the browser session for this request, or None.

    Never raises -- a missing codec (app not started), missing cookie, bad
    signature or expired cookie all read as "not logged in".
    """
    codec: SessionCookieCodec | None = getattr(request.app.state, "sessions", None)
    if codec is None:
        return None
    return codec.read(request)
