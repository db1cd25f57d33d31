"""
core/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware, stored on app.state.limiter)
and by the routes that accept passwords: POST /auth in api/routes/auth.py and
POST /oauth/authorize in web/routes.py. It lives in core/ so that api/ and
web/ can both use it without importing each other.

A single shared instance means every route shares one in-memory counter
store. Separate instances per module would each count in isolation and the
limits would never trigger.

The limit string is read from settings at request time (AUTH_RATE_LIMIT), so
tests and deployments can change it without touching code.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def auth_rate_limit() -> str:
    """Per-IP limit applied to every endpoint that verifies a password."""
    return get_settings().auth_rate_limit
