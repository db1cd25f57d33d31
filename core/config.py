"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for epicflare happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. cookie_secret -> COOKIE_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a cookie secret with a warning;
      production mode refuses to start without one.

Security notes:
  [M6] COOKIE_SECRET shorter than 32 chars is rejected outright. The session
       cookie is an HS256 JWT and its integrity rests entirely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing COOKIE_SECRET is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, oauth/, or toolserver/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("epicflare.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'epicflare.db'}"

# Supported OAuth scopes. Compiled constant, not configuration: the authorize
# endpoint, the protected resource metadata and the WWW-Authenticate challenge
# all advertise exactly this list.
OAUTH_SCOPES: list[str] = ["profile", "email"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    cookie_secret: str = ""
    database_url: str = _DEFAULT_DB_URL
    # Public origin used for links in outgoing email. Empty = derive from request.
    app_base_url: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_allow_origins: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Sessions and auth
    # ------------------------------------------------------------------

    session_max_age_seconds: int = 60 * 60 * 24 * 7
    auth_rate_limit: str = "10/minute"
    password_reset_ttl_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    oauth_code_ttl_seconds: int = 600
    oauth_access_token_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Email (Resend). No from-address means reset emails are logged, not sent.
    # ------------------------------------------------------------------

    resend_api_base_url: str = "https://api.resend.com"
    resend_api_key: str = ""
    resend_from_email: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_cookie_secret(self) -> "Settings":
        """Enforce COOKIE_SECRET policy [M7].

        Dev mode (DEBUG=true): auto-generate a random secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if COOKIE_SECRET is missing.

        Both modes: reject secrets shorter than 32 characters [M6].
        """
        if not self.cookie_secret:
            if self.debug:
                self.cookie_secret = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated COOKIE_SECRET. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "COOKIE_SECRET is required in production mode. "
                    "Set COOKIE_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.cookie_secret) < 32:
            raise ValueError("COOKIE_SECRET must be at least 32 characters for session signing.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
