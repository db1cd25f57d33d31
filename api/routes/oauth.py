"""
api/routes/oauth.py -- Machine-facing OAuth endpoints (JSON only).

Routes:
  POST /oauth/token                              -- code exchange (RFC 6749 4.1.3)
  POST /oauth/register                           -- dynamic client registration (RFC 7591)
  GET  /oauth/authorize-info                     -- client name + scopes for an authorize query
  GET  /.well-known/oauth-authorization-server   -- RFC 8414 metadata
  GET  /.well-known/oauth-protected-resource     -- RFC 9728 metadata for /mcp
  GET  /.well-known/oauth-protected-resource/mcp -- same document, path-suffixed form

The human-facing authorize page and its form POST live in web/routes.py.

Token and registration errors use the RFC 6749 envelope
({"error": ..., "error_description": ...}), not the {"error": "<message>"}
envelope of the rest of the API, because OAuth clients parse them.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from auth.dependencies import request_origin
from oauth.helpers import OAuthProtocolError, OAuthRequestError, resolve_auth_request, resolve_scopes
from oauth.mcp_auth import MCP_RESOURCE_PATH, PROTECTED_RESOURCE_METADATA_PATH, build_protected_resource_metadata
from oauth.provider import OAuthProvider, build_authorization_server_metadata

# Auth policy: every route here is public. /oauth/token authenticates the
# *client* itself (client_secret_basic / client_secret_post / PKCE).
router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _protocol_error(exc: OAuthProtocolError) -> JSONResponse:
    headers = dict(_NO_STORE)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def _provider(request: Request) -> OAuthProvider | None:
    return getattr(request.app.state, "oauth_provider", None)


_UNAVAILABLE = OAuthProtocolError("temporarily_unavailable", "OAuth is not configured.", 503)


@router.post("/oauth/token")
async def token(request: Request) -> JSONResponse:
    provider = _provider(request)
    if provider is None:
        return _protocol_error(_UNAVAILABLE)
    form = await request.form()
    fields = {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        body = await provider.exchange_code(fields, request.headers.get("authorization"))
    except OAuthProtocolError as exc:
        return _protocol_error(exc)
    return JSONResponse(content=body, headers=_NO_STORE)


@router.post("/oauth/register", status_code=201)
async def register(request: Request) -> JSONResponse:
    provider = _provider(request)
    if provider is None:
        return _protocol_error(_UNAVAILABLE)
    try:
        metadata = await request.json()
    except ValueError:
        return _protocol_error(OAuthProtocolError("invalid_client_metadata", "Request body must be JSON."))
    if not isinstance(metadata, dict):
        return _protocol_error(OAuthProtocolError("invalid_client_metadata", "Request body must be a JSON object."))
    try:
        body = await provider.register_client(metadata)
    except OAuthProtocolError as exc:
        return _protocol_error(exc)
    return JSONResponse(status_code=201, content=body, headers=_NO_STORE)


@router.get("/oauth/authorize-info")
async def authorize_info(request: Request) -> JSONResponse:
    """Describe an authorize request without rendering HTML.

    Same validation as GET /oauth/authorize; used by clients that render
    their own consent UI.
    """
    helper = getattr(request.app.state, "oauth_helper", None)
    try:
        auth_request, client = await resolve_auth_request(helper, request)
        scopes = resolve_scopes(auth_request.scope)
    except OAuthRequestError as exc:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})
    return JSONResponse(
        content={
            "ok": True,
            "client": {"id": client.client_id, "name": client.client_name or client.client_id},
            "scopes": scopes,
        }
    )


# ---------------------------------------------------------------------------
# Discovery documents
# ---------------------------------------------------------------------------


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(request: Request) -> JSONResponse:
    return JSONResponse(content=build_authorization_server_metadata(request_origin(request)))


@router.get(PROTECTED_RESOURCE_METADATA_PATH)
@router.get(PROTECTED_RESOURCE_METADATA_PATH + MCP_RESOURCE_PATH)
async def protected_resource_metadata(request: Request) -> JSONResponse:
    return JSONResponse(content=build_protected_resource_metadata(request_origin(request)))
