"""
API request and response models for the epicflare JSON endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are separate from the dataclasses in auth/models.py and oauth/models.py,
which own the internal domain representation. Route handlers map between the
two.

Request bodies are parsed by hand (await request.json()) and then validated
with model_validate(), not declared as FastAPI body parameters. The auth and
reset endpoints answer malformed input with fixed 400 messages; FastAPI's
automatic 422 validation envelope would not match them.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _LenientBody(BaseModel):
    """Base for JSON bodies where a wrong-typed field counts as missing."""

    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def non_strings_are_empty(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class CredentialsRequest(_LenientBody):
    """Body of POST /auth. mode is checked by the route (login or signup)."""

    email: str = ""
    password: str = ""
    mode: str = ""


class PasswordResetRequest(_LenientBody):
    email: str = ""


class PasswordResetConfirm(_LenientBody):
    token: str = ""
    password: str = ""


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Error envelope shared by every JSON endpoint: {"error": "<message>"}."""

    error: str


class AuthResponse(BaseModel):
    ok: Literal[True] = True
    mode: Literal["login", "signup"]


class SessionInfo(BaseModel):
    email: str


class SessionResponse(BaseModel):
    ok: bool
    session: Optional[SessionInfo] = None


class OkResponse(BaseModel):
    ok: Literal[True] = True
    message: Optional[str] = None


class DatabaseProbe(BaseModel):
    canUse: bool


class HealthResponse(BaseModel):
    ok: bool = True
    databaseProbe: Optional[DatabaseProbe] = None
