"""
api/main.py -- FastAPI application entry point for nestguard.

Exposes the admin identity subsystem over HTTP: admin login/session
endpoints, invitation and account administration, the audit trail, and a
stateless end-user /me check.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, stores, signing self-check, purge task)
and shutdown (cancel purge task, dispose the engine) symmetrically.

Error mapping: every AuthError subclass carries its own status_code and
code; one handler turns them into the {"error": {...}} envelope. Internal
context (chained exceptions, token failure reasons) goes to the log only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin_accounts import router as admin_accounts_router
from api.routes.v1.admin_auth import router as admin_auth_router
from api.routes.v1.users import router as users_router
from auth.service import AuthComponents, build_components
from auth.tokens import check_signing_config
from core.config import get_settings
from core.errors import AuthError, TransientError

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("nestguard.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def attach_components(app: FastAPI, components: AuthComponents) -> None:
    """Expose the auth collaborators on app.state for the Depends() helpers."""
    app.state.components = components
    app.state.settings = components.settings
    app.state.admin_store = components.admin_store
    app.state.sessions = components.sessions
    app.state.authz = components.authz
    app.state.admin_tokens = components.admin_tokens
    app.state.user_tokens = components.user_tokens
    app.state.admin_auth = components.admin_auth


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Mark expired invitations/reset tokens and revoke expired sessions periodically.

    A transient store failure skips one round; the next round retries.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            app.state.sessions.purge_expired()
        except TransientError:
            logger.warning("Expired-record purge skipped: store unavailable")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Components -- settings were validated at import; stores and token
         services are built from them.
      2. Signing self-check -- a broken key or policy raises
         ConfigurationError here and the server never accepts a request.
      3. Purge task last -- references app.state.sessions.
    """
    logger.info("nestguard API starting up")
    components = build_components(_settings)
    check_signing_config(components.admin_tokens, components.user_tokens)
    attach_components(app, components)
    logger.info("Auth components initialized (database=%s)", components.admin_store.engine.url.drivername)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    components.close()
    logger.info("nestguard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="nestguard API",
    description="Admin identity and access: sessions, invitations, password resets, roles and audit.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. Register in the order you want the request to encounter
# them: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Only method, path, status, latency and client host are logged;
# headers (and so bearer tokens) never are.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(admin_auth_router, prefix="/api/v1", tags=["Admin Auth"])
app.include_router(admin_accounts_router, prefix="/api/v1", tags=["Admin Accounts"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a domain error 1:1 to its HTTP status and code.

    Only the class-level code and the message reach the client. 5xx-class
    errors are logged with the full chain; 4xx are routine and logged at INFO.
    """
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc, exc_info=exc
        )
    else:
        logger.info("%s on %s %s (%s)", exc.__class__.__name__, request.method, request.url.path, exc.code)
    response = _envelope(exc.status_code, exc.code, exc.message)
    if isinstance(exc, TransientError):
        response.headers["Retry-After"] = "1"
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _envelope(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and database reachability."""
    store = getattr(request.app.state, "admin_store", None)
    database_ok = store is not None and store.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
