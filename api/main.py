"""
api/main.py -- FastAPI application entry point for Passgate.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- holds the OAuth state between redirect and callback

Lifespan builds the credential store, the notifier, and the auth services
once, stores them on app.state, and starts the expired-token purge task.
Shutdown reverses it.

Error mapping: the auth core raises core.errors.AuthError subclasses; the single
handler below turns each kind into its HTTP status. Routes never build error
responses themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.dependencies import get_current_user
from auth.mfa import MfaChallenge
from auth.models import User
from auth.oauth import oauth as oauth_client
from auth.orchestrator import SessionOrchestrator
from auth.recovery import AccountRecovery
from auth.sessions import TokenService
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import (
    AccountInactive,
    AlreadyExists,
    AuthError,
    EmailNotVerified,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    TooManyRequests,
    Unavailable,
    ValidationFailed,
)
from notify.mailer import build_notifier

APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("passgate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def install_services(app: FastAPI, store: UserStore, notifier, settings: Settings) -> None:
    """Build the auth services around one store and notifier and put them on app.state."""
    tokens = TokenService(store, settings)
    mfa = MfaChallenge(store, tokens, settings)
    recovery = AccountRecovery(store, tokens, notifier, settings)
    app.state.user_store = store
    app.state.notifier = notifier
    app.state.token_service = tokens
    app.state.mfa = mfa
    app.state.recovery = recovery
    app.state.orchestrator = SessionOrchestrator(store, tokens, mfa, recovery, settings)
    app.state.oauth = oauth_client


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Delete expired refresh tokens and MFA tickets every `interval` seconds.

    The store call is blocking, so it runs in the threadpool. A failed pass is
    logged and the loop tries again next interval. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            tokens, tickets = await run_in_threadpool(app.state.user_store.purge_expired)
        except Unavailable:
            logger.warning("Purge skipped: credential store unavailable")
            continue
        except Exception:
            logger.exception("Purge pass failed")
            continue
        if tokens or tickets:
            logger.info("Purged %d expired refresh token(s) and %d MFA ticket(s)", tokens, tickets)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the purge task references it.
    """
    settings = get_settings()
    logger.info("Passgate API starting up")
    store = UserStore()
    notifier = build_notifier(settings)
    install_services(app, store, notifier, settings)
    logger.info("Auth initialized (users present=%s)", store.has_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.purge_task
    notifier.close()
    store.close()
    logger.info("Passgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Passgate API",
    description="Session lifecycle: login, MFA, token refresh and revocation, email verification, password reset.",
    version=APP_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are disabled; auth-protected equivalents are below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the last one added is the outermost.
# Register in reverse of the order a request should meet them.
# ---------------------------------------------------------------------------

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for the
# authorization code flow). No auth credentials are kept in this session.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=not _settings.debug)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler; wall-clock time around call_next is the reported latency.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Passgate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Passgate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Checked most-specific first via the exception's MRO, so InvalidToken
# subclasses (expired, malformed, consumed) inherit 401.
_STATUS_BY_KIND: dict[type[AuthError], int] = {
    InvalidCredentials: 401,
    InvalidToken: 401,
    TooManyRequests: 429,
    AccountInactive: 403,
    EmailNotVerified: 403,
    Unavailable: 503,
    AlreadyExists: 409,
    ValidationFailed: 422,
    NotFound: 404,
    Forbidden: 403,
}


def status_for(exc: AuthError) -> int:
    for kind in type(exc).__mro__:
        if kind in _STATUS_BY_KIND:
            return _STATUS_BY_KIND[kind]
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a core error kind to its HTTP status with the standard envelope."""
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, status, exc.code)
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail),
        ).model_dump(),
    )
    if status == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code=TooManyRequests.code,
                message=TooManyRequests.default_message,
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied -- health checks from load balancers must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request):
    """Report liveness and whether the credential store answers."""
    db_ok = request.app.state.user_store.ping()
    body = HealthResponse(
        status="ok" if db_ok else "degraded",
        version=APP_VERSION,
        components={"database": "ok" if db_ok else "unavailable"},
    )
    if not db_ok:
        return JSONResponse(status_code=503, content=body.model_dump())
    return body
