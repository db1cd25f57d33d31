"""
api/routes/auth.py -- Browser session endpoints.

Routes:
  POST /auth     -- login or signup with email/password; sets the session cookie
  GET  /session  -- who is logged in (never cached)
  POST /logout   -- clears the session cookie; 302 /login

Security:
  [H2] POST /auth is rate-limited per client IP (AUTH_RATE_LIMIT).
  [C1] Login goes through authenticate_user() for timing equalization --
       unknown email and wrong password return the identical 401 body.
  [M5] Cache-Control: no-store on every /auth and /session response.
  A new session id is generated on every successful login or signup, so a
  pre-login cookie value can never be carried into an authenticated session.

PBKDF2 runs in Starlette's threadpool so a login never blocks the event loop.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import AuthResponse, CredentialsRequest, ErrorResponse, SessionInfo, SessionResponse
from auth.audit import get_request_ip, log_audit_event
from auth.credentials import authenticate_user, normalize_email
from auth.dependencies import is_secure_request, try_get_session
from auth.models import User
from auth.passwords import create_password_hash
from auth.sessions import SessionCookieCodec
from auth.store import UserStore
from core.limiter import auth_rate_limit, limiter

logger = logging.getLogger("epicflare.auth")

AUTH_MODES = ("login", "signup")

# Auth policy:
# - POST /auth:     public -- this is where sessions come from
# - GET  /session:  public -- reports {ok: false} when logged out
# - POST /logout:   public -- clearing a cookie needs no prior auth
router = APIRouter()


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def _error(status_code: int, message: str) -> JSONResponse:
    return _no_store(JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump()))


@router.post("/auth", response_model=AuthResponse)
@limiter.limit(auth_rate_limit)  # under @router so the registered endpoint is the limited one
async def authenticate(request: Request) -> JSONResponse:
    """Log in or sign up, then issue a fresh session cookie."""
    ip = get_request_ip(request)
    path = request.url.path

    try:
        body = await request.json()
    except ValueError:
        log_audit_event(category="auth", action="auth", result="failure", ip=ip, path=path, reason="invalid_json")
        return _error(400, "Invalid JSON payload.")
    if not isinstance(body, dict):
        log_audit_event(category="auth", action="auth", result="failure", ip=ip, path=path, reason="invalid_body")
        return _error(400, "Invalid request body.")

    credentials = CredentialsRequest.model_validate(body)
    email = normalize_email(credentials.email)
    password = credentials.password
    mode = credentials.mode
    if not email or not password or mode not in AUTH_MODES:
        log_audit_event(
            category="auth",
            action=mode if mode in AUTH_MODES else "auth",
            result="failure",
            email=email or None,
            ip=ip,
            path=path,
            reason="invalid_payload",
        )
        return _error(400, "Email, password, and mode are required.")

    store: UserStore = request.app.state.user_store

    if mode == "signup":
        if await run_in_threadpool(store.email_exists, email):
            log_audit_event(
                category="auth", action="signup", result="failure", email=email, ip=ip, path=path, reason="email_exists"
            )
            return _error(409, "Email already in use.")
        password_hash = await run_in_threadpool(create_password_hash, password)
        try:
            # UNIQUE(email) catches a concurrent signup that passed the check above
            await run_in_threadpool(store.create_user, User(username=email, email=email, password_hash=password_hash))
        except Exception:  # noqa: BLE001 -- cause goes to the log, client gets a generic 500
            logger.exception("Signup insert failed")
            log_audit_event(
                category="auth", action="signup", result="failure", email=email, ip=ip, path=path, reason="insert_failed"
            )
            return _error(500, "Unable to create account.")
    else:
        user = await run_in_threadpool(authenticate_user, store, email, password)  # [C1]
        if user is None:
            log_audit_event(
                category="auth",
                action="login",
                result="failure",
                email=email,
                ip=ip,
                path=path,
                reason="invalid_credentials",
            )
            return _error(401, "Invalid email or password.")

    codec: SessionCookieCodec = request.app.state.sessions
    response = _no_store(JSONResponse(content=AuthResponse(mode=mode).model_dump()))
    codec.set_cookie(response, codec.create_session(email), secure=is_secure_request(request))
    log_audit_event(category="auth", action=mode, result="success", email=email, ip=ip, path=path)
    return response


@router.get("/session", response_model=SessionResponse)
async def session(request: Request) -> JSONResponse:
    current = try_get_session(request)
    if current is None:
        return _no_store(JSONResponse(content={"ok": False}))
    body = SessionResponse(ok=True, session=SessionInfo(email=current.email))
    return _no_store(JSONResponse(content=body.model_dump()))


@router.post("/logout")
async def logout(request: Request) -> RedirectResponse:
    """Clear the session cookie and send the browser to the login page."""
    response = RedirectResponse("/login", status_code=302)
    codec: SessionCookieCodec = request.app.state.sessions
    codec.clear_cookie(response, secure=is_secure_request(request))
    return response
