"""
api/main.py -- FastAPI application entry point for epicflare.

Exposes the JSON endpoints (session auth, password reset, OAuth token,
registration and discovery) and mounts the MCP tool server at /mcp behind the
bearer token gate. HTML pages are added by asgi.py from web/routes.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one access log line per request
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter
  5. McpAuthMiddleware     -- authenticates /mcp and hands it to the MCP app

Lifespan handles startup (stores, session codec, OAuth provider, mailer, MCP
session manager, purge task) and shutdown symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from api.models import DatabaseProbe, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.oauth import router as oauth_router
from api.routes.password_reset import router as password_reset_router
from auth.audit import get_request_ip
from auth.mailer import ResendMailer
from auth.sessions import SessionCookieCodec
from auth.store import UserStore
from core.config import get_settings
from core.limiter import limiter
from oauth.mcp_auth import McpAuthMiddleware
from oauth.provider import OAuthProvider
from oauth.store import OAuthStore
from toolserver.server import mcp, mcp_app

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("epicflare.api")

_PURGE_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired authorization codes and access tokens every hour.

    Expired rows are already unusable (lookups check expires_at); this only
    keeps the tables small. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            removed = await run_in_threadpool(app.state.oauth_store.purge_expired, int(time.time()))
        except Exception:  # noqa: BLE001 -- keep the loop alive; next run retries
            logger.exception("OAuth purge failed")
            continue
        if removed:
            logger.info("Purged %d expired OAuth records", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every process-wide object once and tear it down on shutdown.

    Everything request handlers need hangs off app.state; nothing is a module
    global. The MCP session manager must be running before the first /mcp
    request, so the yield happens inside its context.
    """
    settings = get_settings()
    logger.info("epicflare starting up")

    app.state.sessions = SessionCookieCodec(settings.cookie_secret, settings.session_max_age_seconds)
    app.state.user_store = UserStore()
    app.state.oauth_store = OAuthStore()
    provider = OAuthProvider(
        app.state.oauth_store,
        code_ttl_seconds=settings.oauth_code_ttl_seconds,
        token_ttl_seconds=settings.oauth_access_token_ttl_seconds,
    )
    app.state.oauth_provider = provider
    app.state.oauth_helper = provider
    app.state.mailer = ResendMailer(
        settings.resend_api_base_url,
        settings.resend_api_key,
        settings.resend_from_email,
    )
    if not settings.resend_from_email:
        logger.warning("RESEND_FROM_EMAIL not set -- password reset emails will be logged, not sent")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    try:
        async with mcp.session_manager.run():
            logger.info("MCP session manager started")
            yield
    finally:
        app.state.purge_task.cancel()
        app.state.oauth_store.close()
        app.state.user_store.close()
        logger.info("epicflare shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="epicflare",
    description="Email/password accounts, an OAuth 2.0 authorization server, and an OAuth-protected MCP server.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST call ends up
# outermost. Registered innermost first: McpAuth -> SlowAPI -> CORS ->
# TrustedHost. The log_requests function middleware below is added last and
# therefore sees every request, including rejected ones.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(McpAuthMiddleware, mcp_app=mcp_app)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Mcp-Session-Id", "Mcp-Protocol-Version"],
    expose_headers=["WWW-Authenticate", "Mcp-Session-Id"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Outermost layer, so TrustedHost rejections, 429s and /mcp 401s are logged
# too. The client IP honours CDN and proxy headers (same rule as audit
# events). Server errors are logged at WARNING.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.log(
        logging.WARNING if response.status_code >= 500 else logging.INFO,
        "%s %s -> %d in %.1fms ip=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        get_request_ip(request) or "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(password_reset_router, tags=["Password reset"])
app.include_router(oauth_router, tags=["OAuth"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON endpoints answer with {"error": "<message>"}. The HTTPException handler
# is registered on Starlette's class so router 404/405 answers match too.
# Unexpected exceptions never leak details to the client.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(status_code=429, content=ErrorResponse(error="Too many requests.").model_dump())
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return PlainTextResponse("Internal Server Error", status_code=500)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit -- load balancer checks must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Liveness check. ?probe=database also runs a trivial query."""
    if request.query_params.get("probe") != "database":
        return JSONResponse(content=HealthResponse().model_dump(exclude_none=True))
    try:
        can_use = await run_in_threadpool(request.app.state.user_store.ping)
    except Exception:  # noqa: BLE001 -- a failed probe is the answer, not an error
        logger.exception("Database probe failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": "database probe failed"})
    body = HealthResponse(ok=can_use, databaseProbe=DatabaseProbe(canUse=can_use))
    return JSONResponse(status_code=200 if can_use else 500, content=body.model_dump())
