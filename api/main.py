"""
api/main.py -- FastAPI application entry point for credcore.

Run with:      uvicorn asgi:app --reload

Middleware stack:
  1. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter
  2. log_requests      -- one log line per request with latency

Lifespan builds the store and the services once and hangs them on app.state;
routes reach them through request.app.state. Nothing is a module-level
singleton, so tests can wire their own instances by swapping the lifespan.

Every error leaves through one of the exception handlers below as the
standard envelope {success: false, data: null, message}.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import Envelope, HealthResponse
from api.routes.v1.oidc import router as oidc_router
from api.routes.v1.principals import router as principals_router
from auth.broker import AuthorizationBroker
from auth.errors import AuthError
from auth.models import utcnow
from auth.notify import LogNotifier
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from auth.verification import VerificationService
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("credcore.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, store: CredentialStore, notifier=None, clock=utcnow) -> None:
    """Attach the store and every service to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph.
    """
    issuer = TokenIssuer(settings, logger=logging.getLogger("credcore.tokens"))
    sessions = SessionManager(store, settings.token_expire_seconds, clock=clock)
    app.state.settings = settings
    app.state.store = store
    app.state.issuer = issuer
    app.state.sessions = sessions
    app.state.verification = VerificationService(
        store,
        issuer,
        sessions,
        settings,
        notifier=notifier or LogNotifier(),
        clock=clock,
    )
    app.state.broker = AuthorizationBroker(store, issuer, settings, clock=clock)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired authorization codes every hour.

    Expired codes are already unusable; this only keeps the table small.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        removed = await asyncio.to_thread(app.state.store.purge_authorization_codes, utcnow())
        if removed:
            logger.info("Purged %d expired authorization codes", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build resources on startup; release them on shutdown."""
    logger.info("credcore API starting up")
    store = CredentialStore(_settings.database_url)
    wire_services(app, _settings, store)
    logger.info("Credential store initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("credcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="credcore API",
    description="Credential lifecycle core: verification, password reset, OTP login and an OIDC-lite broker.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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

app.include_router(oidc_router, prefix=_settings.api_prefix, tags=["OIDC"])
app.include_router(principals_router, prefix=_settings.api_prefix, tags=["Credentials"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same Envelope so clients parse every response the
# same way. Internal detail goes to the log, never to the message.
# ---------------------------------------------------------------------------


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=Envelope(success=False, data=None, message=message).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the core's error taxonomy onto status codes."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    resp = _failure(exc.status_code, exc.message)
    if exc.status_code == 401:
        resp.headers["WWW-Authenticate"] = "Bearer"
    return resp


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a rate limit is exceeded, with Retry-After in seconds."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _failure(429, "Too many requests")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed input is a ValidationError (400)."""
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    message = "Invalid request"
    if fields:
        message = f"Invalid request: {', '.join(fields)}"
    return _failure(400, message)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Router-level errors (unknown path, wrong method) in the envelope."""
    return _failure(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected store/crypto failures (ServerError).

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _failure(500, "Server error")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly here so it is always reachable. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get(f"{_settings.api_prefix}/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
