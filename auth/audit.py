"""
auth/audit.py -- Best-effort audit trail for authentication events.

Audit events are structured JSON lines on the "epicflare.audit" logger. They
are a side channel: log_audit_event() never raises, so a broken handler or an
unserializable field cannot fail the login/signup/reset it describes.

Passwords and tokens are never passed here. Callers supply the canonical
email, client IP, request path and a short machine-readable reason.
"""

from __future__ import annotations

import json
import logging

from starlette.requests import Request

logger = logging.getLogger("epicflare.audit")


def get_request_ip(request: Request) -> str | None:
    """Best guess at the client IP: CDN header, then X-Forwarded-For, then peer."""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def log_audit_event(
    *,
    category: str,
    action: str,
    result: str,
    email: str | None = None,
    ip: str | None = None,
    path: str | None = None,
    reason: str | None = None,
) -> None:
    """Emit one audit record. Failures are logged at DEBUG and swallowed."""
    event = {
        "category": category,
        "action": action,
        "result": result,
        "email": email,
        "ip": ip,
        "path": path,
        "reason": reason,
    }
    try:
        logger.info("audit %s", json.dumps({k: v for k, v in event.items() if v is not None}, sort_keys=True))
    except Exception:  # noqa: BLE001 -- audit must never fail the request
        logger.debug("Dropped audit event %s/%s", category, action, exc_info=True)
