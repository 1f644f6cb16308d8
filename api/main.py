"""
api/main.py -- FastAPI application entry point for Storefront Identity.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- browser origins; credentials allowed for the refresh cookie
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- authlib keeps the OAuth state here between redirect and callback

Protected routes declare Depends(get_current_user) or Depends(require_admin)
themselves; routes without one are public.

Lifespan builds the shared engine, cache, and services once per process and
hands them to handlers through app.state. Nothing here is a module-level
singleton except the app itself.
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
from sqlalchemy import text
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.oauth import IdentityProvider, build_identity_providers
from auth.oauth import oauth as oauth_client
from auth.store import RefreshTokenStore, UserStore, open_engine
from cache.store import TTLCache
from core.config import Settings, get_settings
from core.errors import AdapterError, IdentityError
from identity.directory import UserDirectory
from identity.issuer import TokenIssuer
from identity.session import SessionService

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storefront.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    state,
    engine: Engine,
    cache: TTLCache,
    settings: Settings,
    identity_providers: dict[str, IdentityProvider],
) -> None:
    """Build the store -> directory -> issuer -> session graph on app.state.

    Shared by the lifespan and the test fixtures so both run the same graph.
    """
    state.engine = engine
    state.cache = cache
    state.user_store = UserStore(engine)
    state.refresh_tokens = RefreshTokenStore(engine)
    state.directory = UserDirectory(state.user_store, cache, ttl=settings.access_token_expire_seconds)
    state.issuer = TokenIssuer(state.refresh_tokens)
    state.session_service = SessionService(
        state.directory,
        state.issuer,
        state.refresh_tokens,
        bind_user_agent=settings.refresh_bind_user_agent,
    )
    state.identity_providers = identity_providers
    state.oauth = oauth_client


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired(state) -> tuple[int, int]:
    """Delete expired refresh tokens and cache entries. Returns (tokens, entries)."""
    tokens = state.refresh_tokens.purge_expired()
    entries = state.cache.purge_expired()
    logger.info("Purged %d expired refresh token(s) and %d cache entr(ies)", tokens, entries)
    return tokens, entries


async def _purge_loop(app: FastAPI, interval: float = 6 * 60 * 60) -> None:
    """Run purge_expired() in the threadpool every interval seconds.

    A failed cycle is logged and the loop keeps going. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(purge_expired, app.state)
        except Exception:
            logger.exception("Purge cycle failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create process-scoped resources on startup and release them on shutdown."""
    logger.info("Storefront Identity API starting up")
    engine = open_engine(_settings.database_url)
    cache = TTLCache(default_ttl=_settings.access_token_expire_seconds)
    providers = build_identity_providers(_settings)
    wire_services(app.state, engine, cache, _settings, providers)
    logger.info("Identity services initialized (providers=%s)", sorted(providers) or "none")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.cache.close()
    app.state.engine.dispose()
    logger.info("Storefront Identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storefront Identity API",
    description="Accounts, roles, password and OAuth login, and rotating refresh tokens.",
    version=__version__,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.is_production)

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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["User"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves the API as the same ErrorResponse envelope. Only the
# status code, error code, and headers vary.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    """Map the identity error taxonomy onto HTTP.

    AdapterError detail (which provider, what went wrong) is logged and
    replaced with the generic provider-failure message in the response.
    """
    message = exc.message
    if isinstance(exc, AdapterError):
        logger.warning("Identity provider %s failed: %s", exc.provider or "unknown", exc.message)
        message = exc.public_message
    headers = None
    if exc.status_code == 401:
        headers = {"WWW-Authenticate": "Bearer", "Cache-Control": "no-store"}
    return _error_response(exc.status_code, exc.code, message, headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    client_host = request.client.host if request.client else "unknown"
    logger.warning("Rate limit hit on %s from %s", request.url.path, client_host)
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        detail=str(exc),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed body or query parameters. Pydantic's error list goes in detail."""
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Framework-raised errors: unknown route (404), wrong method (405)."""
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort for anything the layers below did not translate.

    The traceback (which may include SQL or cache internals) is logged; the
    client only gets the internal_error envelope.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
