"""
api/routes/password_reset.py -- Email-based password reset.

Routes:
  POST /password-reset          -- {email}; emails a one-hour reset link
  POST /password-reset/confirm  -- {token, password}; sets the new password

Security:
  The request endpoint answers identically whether or not the account exists
  (no account enumeration). Only the SHA-256 of the emailed token is stored.
  A completed reset deletes every pending reset of the user, so a link works
  at most once. Mail delivery is best-effort and never changes the response.
"""

from __future__ import annotations

import hashlib
import secrets
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import ErrorResponse, OkResponse, PasswordResetConfirm, PasswordResetRequest
from auth.audit import get_request_ip, log_audit_event
from auth.credentials import normalize_email
from auth.dependencies import request_origin
from auth.mailer import ResendMailer, build_reset_email
from auth.models import PasswordReset
from auth.passwords import create_password_hash
from auth.store import UserStore
from core.config import get_settings
from oauth.helpers import add_query_params

RESET_TOKEN_BYTES = 32
RESET_REQUESTED_MESSAGE = "If the account exists, a reset email has been sent."

router = APIRouter()


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


async def _read_json(request: Request) -> tuple[dict, JSONResponse | None]:
    """Return (body, None), or ({}, error response) when the body is not JSON.

    A JSON value that is not an object reads as an empty body, so its fields
    fail the required-field check with the endpoint's own message.
    """
    try:
        body = await request.json()
    except ValueError:
        return {}, _error(400, "Invalid JSON payload.")
    return (body if isinstance(body, dict) else {}), None


@router.post("/password-reset", response_model=OkResponse)
async def request_password_reset(request: Request) -> JSONResponse:
    ip = get_request_ip(request)
    path = request.url.path
    body, error = await _read_json(request)
    if error is not None:
        return error

    email = normalize_email(PasswordResetRequest.model_validate(body).email)
    if not email:
        log_audit_event(
            category="auth", action="password_reset_request", result="failure", ip=ip, path=path, reason="invalid_payload"
        )
        return _error(400, "Email is required.")

    store: UserStore = request.app.state.user_store
    user = await run_in_threadpool(store.get_by_email, email)
    if user is not None:
        settings = get_settings()
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        reset = PasswordReset(
            user_id=user.id,
            token_hash=_hash_token(token),
            expires_at=int(time.time() * 1000) + settings.password_reset_ttl_seconds * 1000,
        )
        await run_in_threadpool(store.replace_password_reset, reset)
        base_url = settings.app_base_url.rstrip("/") or request_origin(request)
        reset_url = add_query_params(f"{base_url}/reset-password", {"token": token})
        subject, html = build_reset_email(reset_url)
        mailer: ResendMailer = request.app.state.mailer
        sent = await run_in_threadpool(mailer.send_email, email, subject, html)
        log_audit_event(
            category="auth",
            action="password_reset_request",
            result="success",
            email=email,
            ip=ip,
            path=path,
            reason=None if sent else "email_not_sent",
        )
    else:
        log_audit_event(
            category="auth",
            action="password_reset_request",
            result="failure",
            email=email,
            ip=ip,
            path=path,
            reason="unknown_email",
        )

    return JSONResponse(content=OkResponse(message=RESET_REQUESTED_MESSAGE).model_dump())


@router.post("/password-reset/confirm", response_model=OkResponse)
async def confirm_password_reset(request: Request) -> JSONResponse:
    ip = get_request_ip(request)
    path = request.url.path
    body, error = await _read_json(request)
    if error is not None:
        return error

    payload = PasswordResetConfirm.model_validate(body)
    token = payload.token.strip()
    if not token or not payload.password:
        log_audit_event(
            category="auth", action="password_reset_confirm", result="failure", ip=ip, path=path, reason="invalid_payload"
        )
        return _error(400, "Token and password are required.")

    store: UserStore = request.app.state.user_store
    reset = await run_in_threadpool(store.get_password_reset, _hash_token(token))
    if reset is None or reset.expires_at < int(time.time() * 1000):
        if reset is not None:
            await run_in_threadpool(store.delete_password_reset, reset.id)
        log_audit_event(
            category="auth", action="password_reset_confirm", result="failure", ip=ip, path=path, reason="invalid_token"
        )
        return _error(400, "Reset link is invalid or expired.")

    password_hash = await run_in_threadpool(create_password_hash, payload.password)
    await run_in_threadpool(store.set_password_for_user, reset.user_id, password_hash)
    await run_in_threadpool(store.delete_password_resets_for_user, reset.user_id)
    log_audit_event(category="auth", action="password_reset_confirm", result="success", ip=ip, path=path)
    return JSONResponse(content={"ok": True})
