"""
auth/sessions.py -- Signed session cookie codec.

The cookie value is an HS256 JWT (python-jose) carrying the session id, the
email and an exp claim. The browser only ever sees an opaque signed string;
tampering with any part of it invalidates the signature.

SessionCookieCodec is constructed once at startup with the configured secret
and stored on app.state.sessions. Nothing here reads settings or globals, so
tests can build a codec with any secret.

Cookie attributes:
  httponly=True:   JS cannot read the cookie (XSS mitigation).
  samesite="lax":  sent on top-level navigations, not on cross-site POSTs.
  path="/":        one session for the whole app.
  secure:          set iff the request arrived over HTTPS -- the caller
                   decides via is_secure_request().
  max_age:         matches the JWT exp so both expire together.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request
from starlette.responses import Response

from auth.models import AuthSession

SESSION_COOKIE_NAME = "epicflare_session"

_ALGORITHM = "HS256"


class SessionCookieCodec:
    def __init__(self, secret: str, max_age_seconds: int, cookie_name: str = SESSION_COOKIE_NAME) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty.")
        self._secret = secret
        self.max_age_seconds = max_age_seconds
        self.cookie_name = cookie_name

    @staticmethod
    def create_session(email: str) -> AuthSession:
        """Return a new session identity with a fresh random id."""
        return AuthSession(id=str(uuid.uuid4()), email=email)

    # ------------------------------------------------------------------
    # Token encode / decode
    # ------------------------------------------------------------------

    def encode(self, session: AuthSession) -> str:
        expire = datetime.now(timezone.utc) + timedelta(seconds=self.max_age_seconds)
        payload = {"sid": session.id, "email": session.email, "exp": expire}
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def decode(self, value: str) -> AuthSession | None:
        """Verify a cookie value. Returns None on any failure, never raises.

        Covers bad signature, expired exp, malformed token, and payloads
        missing either field.
        """
        try:
            payload = jwt.decode(value, self._secret, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        session_id = payload.get("sid")
        email = payload.get("email")
        if not isinstance(session_id, str) or not isinstance(email, str) or not session_id or not email:
            return None
        return AuthSession(id=session_id, email=email)

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_cookie(self, response: Response, session: AuthSession, secure: bool) -> None:
        """Write the signed session as a Set-Cookie header on response."""
        response.set_cookie(
            self.cookie_name,
            value=self.encode(session),
            max_age=self.max_age_seconds,
            path="/",
            httponly=True,
            samesite="lax",
            secure=secure,
        )

    def read(self, request: Request) -> AuthSession | None:
        """Return the session carried by the request cookie, or None."""
        value = request.cookies.get(self.cookie_name)
        if not value:
            return None
        return self.decode(value)

    def clear_cookie(self, response: Response, secure: bool) -> None:
        """Expire the session cookie, keeping the same attributes."""
        response.set_cookie(
            self.cookie_name,
            value="",
            max_age=0,
            expires=0,
            path="/",
            httponly=True,
            samesite="lax",
            secure=secure,
        )
