"""
web/routes.py -- Server-rendered pages and the OAuth consent flow.

These routes serve HTML. They share app.state with the API routes (same user
store, session codec and OAuth helper) but render Jinja2 templates instead of
JSON.

Routes:
  GET  /                  -- home page
  GET  /login             -- login / signup form (posts JSON to /auth)
  GET  /account           -- signed-in account page (session required)
  GET  /reset-password    -- reset form (request a link, or set a new password with ?token=)
  GET  /oauth/authorize   -- consent page for an OAuth authorization request
  POST /oauth/authorize   -- approve (email + password) or deny
  GET  /oauth/callback    -- shows code / state / error for loopback and manual testing

Security:
  [C2] Post-login redirects accept relative paths only (open redirect guard).
  [C3] The authorize page never redirects until the Helper has validated the
       client and redirect URI. Every redirect target is the redirect_uri of
       the resolved AuthRequest, never a raw query value.
  [C4] POST /oauth/authorize always re-checks email + password, even when a
       browser session exists. Consent is a separate act from browsing.
  [H2] POST /oauth/authorize is rate-limited per client IP (AUTH_RATE_LIMIT).
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from auth.audit import get_request_ip, log_audit_event
from auth.credentials import authenticate_user, normalize_email
from auth.dependencies import try_get_session
from auth.store import UserStore
from core.limiter import auth_rate_limit, limiter
from oauth.helpers import (
    OAuthHelpers,
    OAuthRequestError,
    add_query_params,
    resolve_auth_request,
    resolve_scopes,
)
from oauth.models import AuthRequest, ClientInfo, CompleteAuthorization, OAuthProps

logger = logging.getLogger("epicflare.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# Expose try_get_session as a Jinja2 global so layout.html can show the
# signed-in email without every handler passing it explicitly.
templates.env.globals["try_get_session"] = try_get_session
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_redirect_to(target: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative ("//host") targets, which
    would send the browser off-site after login.
    """
    if target and target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return "/"


def _wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "")


def _oauth_user_id(email: str) -> str:
    """Stable OAuth subject: SHA-256 of the canonical email, not the database id."""
    return hashlib.sha256(email.encode("utf-8")).hexdigest()


def _display_name(email: str) -> str:
    return email.split("@")[0] or "user"


def _oauth_error(request: Request, message: str, status_code: int = 400) -> Response:
    if _wants_json(request):
        return JSONResponse(
            status_code=status_code,
            content={"ok": False, "error": message, "code": "invalid_request"},
        )
    return templates.TemplateResponse(
        request,
        "oauth_error.html",
        {"message": message},
        status_code=status_code,
    )


def _render_authorize(
    request: Request,
    client: ClientInfo,
    scopes: list[str],
    *,
    email: str = "",
    error: Optional[str] = None,
    status_code: int = 200,
) -> Response:
    if error and _wants_json(request):
        return JSONResponse(
            status_code=status_code,
            content={"ok": False, "error": error, "code": "invalid_request"},
        )
    # The raw query string is replayed verbatim, so repeated parameters
    # (resource) and PKCE/state values survive the form POST.
    query = request.url.query
    action = f"/oauth/authorize?{query}" if query else "/oauth/authorize"
    return templates.TemplateResponse(
        request,
        "authorize.html",
        {
            "client_name": client.client_name or client.client_id,
            "scopes": scopes,
            "form_action": action,
            "email": email,
            "error": error,
        },
        status_code=status_code,
    )


def _redirect(request: Request, url: str) -> Response:
    if _wants_json(request):
        return JSONResponse(content={"ok": True, "redirectTo": url})
    return RedirectResponse(url, status_code=302)


async def _resolve(request: Request) -> tuple[AuthRequest, ClientInfo]:
    helper: Optional[OAuthHelpers] = getattr(request.app.state, "oauth_helper", None)
    return await resolve_auth_request(helper, request)


# ---------------------------------------------------------------------------
# OAuth consent
# ---------------------------------------------------------------------------


@router.get("/oauth/authorize", response_class=HTMLResponse)
async def authorize_page(request: Request) -> Response:
    """Render the consent form. No authentication happens on GET."""
    try:
        auth_request, client = await _resolve(request)
    except OAuthRequestError as exc:
        return _oauth_error(request, str(exc))
    try:
        scopes = resolve_scopes(auth_request.scope)
    except OAuthRequestError as exc:
        return _oauth_error(request, str(exc))

    session = try_get_session(request)
    return _render_authorize(request, client, scopes, email=session.email if session else "")


@router.post("/oauth/authorize", response_class=HTMLResponse)
@limiter.limit(auth_rate_limit)  # under @router so the registered endpoint is the limited one
async def authorize_submit(request: Request) -> Response:
    """Handle approve / deny for an authorization request."""
    try:
        auth_request, client = await _resolve(request)  # [C3]
    except OAuthRequestError as exc:
        return _oauth_error(request, str(exc))

    form = await request.form()
    decision = str(form.get("decision") or "approve")
    if decision == "deny":
        logger.info("OAuth access denied client_id=%s", auth_request.client_id)
        denied = add_query_params(auth_request.redirect_uri, {"error": "access_denied", "state": auth_request.state})
        return _redirect(request, denied)

    try:
        scopes = resolve_scopes(auth_request.scope)
        scope_error = None
    except OAuthRequestError as exc:
        scopes = auth_request.scope
        scope_error = str(exc)

    raw_email = str(form.get("email") or "").strip()
    password = str(form.get("password") or "")
    if not raw_email or not password:
        return _render_authorize(
            request,
            client,
            scopes,
            email=raw_email,
            error="Email and password are required.",
            status_code=400,
        )

    email = normalize_email(raw_email)
    store: UserStore = request.app.state.user_store
    user = await run_in_threadpool(authenticate_user, store, email, password)  # [C4]
    if user is None:
        log_audit_event(
            category="oauth",
            action="authorize",
            result="failure",
            email=email,
            ip=get_request_ip(request),
            path=request.url.path,
            reason="invalid_credentials",
        )
        return _render_authorize(
            request,
            client,
            scopes,
            email=raw_email,
            error="Invalid email or password.",
            status_code=401,
        )

    if scope_error:
        return _render_authorize(request, client, scopes, email=raw_email, error=scope_error, status_code=400)

    user_id = _oauth_user_id(email)
    props: OAuthProps = {"userId": user_id, "email": email, "displayName": _display_name(email)}
    helper: OAuthHelpers = request.app.state.oauth_helper
    redirect_to = await helper.complete_authorization(
        CompleteAuthorization(
            request=auth_request,
            user_id=user_id,
            metadata={"email": email, "clientId": auth_request.client_id},
            scope=scopes,
            props=props,
        )
    )
    log_audit_event(
        category="oauth",
        action="authorize",
        result="success",
        email=email,
        ip=get_request_ip(request),
        path=request.url.path,
    )
    return _redirect(request, redirect_to)


@router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(request: Request) -> HTMLResponse:
    """Show the result of an authorization redirect. 400 when it carries an error."""
    params = request.query_params
    has_error = "error" in params or "error_description" in params
    return templates.TemplateResponse(
        request,
        "callback.html",
        {
            "code": params.get("code"),
            "state": params.get("state"),
            "error": params.get("error"),
            "error_description": params.get("error_description"),
        },
        status_code=400 if has_error else 200,
    )


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
async def home(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "home.html", {})


@router.get("/login", response_class=HTMLResponse)
async def login_page(request: Request) -> Response:
    """Render the login / signup form. Signed-in users go straight to redirectTo."""
    redirect_to = _safe_redirect_to(request.query_params.get("redirectTo"))  # [C2]
    if try_get_session(request) is not None:
        return RedirectResponse(redirect_to, status_code=302)
    mode = "signup" if request.query_params.get("mode") == "signup" else "login"
    return templates.TemplateResponse(request, "login.html", {"redirect_to": redirect_to, "mode": mode})


@router.get("/account", response_class=HTMLResponse)
async def account_page(request: Request) -> Response:
    session = try_get_session(request)
    if session is None:
        target = add_query_params("/login", {"redirectTo": request.url.path})
        return RedirectResponse(target, status_code=302)
    return templates.TemplateResponse(request, "account.html", {"email": session.email})


@router.get("/reset-password", response_class=HTMLResponse)
async def reset_password_page(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "reset_password.html",
        {"token": request.query_params.get("token", "")},
    )
