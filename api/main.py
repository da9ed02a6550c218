"""
api/main.py -- FastAPI application factory for AniRec.

create_app(settings) wires every component explicitly from one immutable
Settings instance -- there is no global configuration or client singleton:

  CredentialStore     <- settings.database_url
  SecretCipher        <- settings.encryption_key
  TokenCodec          <- settings.jwt_secret / jwt_refresh_secret / TTLs
  OAuthGateway        <- settings OAuth client credentials
  AuthSessionManager  <- store + codec + gateway
  RequestAuthenticator<- codec + store

All of them live on app.state for the lifetime of the app.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware      -- credentialed CORS for the frontend origins
  2. SlowAPIMiddleware   -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware   -- signed cookie holding the OAuth state value

Lifespan starts the expired-refresh-token purge task on startup and cancels
it and disposes the DB engine on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.anilist import router as anilist_router
from api.routes.v1.auth import router as auth_router
from auth.crypto import SecretCipher
from auth.dependencies import RequestAuthenticator
from auth.oauth import OAuthGateway
from auth.sessions import AuthSessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from core.config import Settings
from core.errors import AppError, ErrorKind

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("anirec.api")

_STATUS_BY_KIND = {
    ErrorKind.validation: 400,
    ErrorKind.conflict: 409,
    ErrorKind.unauthorized: 401,
    ErrorKind.not_found: 404,
    ErrorKind.upstream: 502,
    ErrorKind.internal: 500,
}

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens every token_purge_interval_seconds.

    Reads never return expired tokens anyway; this only reclaims rows.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    interval = app.state.settings.token_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            app.state.store.purge_expired_refresh_tokens()
        except Exception:
            logger.exception("Refresh token purge failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("AniRec API starting up (environment=%s)", app.state.settings.environment)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("AniRec API shutdown complete")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings, oauth: OAuthGateway | None = None) -> FastAPI:
    """Build a fully wired application from one Settings instance.

    oauth may be supplied to replace the real provider gateway (tests).
    """
    app = FastAPI(
        title="AniRec API",
        description="Accounts, sessions and linked-catalog credentials for the AniRec assistant.",
        version=VERSION,
        lifespan=lifespan,
    )

    store = CredentialStore(settings.database_url)
    codec = TokenCodec(settings)
    gateway = oauth if oauth is not None else OAuthGateway(settings)

    app.state.settings = settings
    app.state.store = store
    app.state.cipher = SecretCipher(settings.encryption_key)
    app.state.codec = codec
    app.state.sessions = AuthSessionManager(store, codec, gateway, bcrypt_rounds=settings.bcrypt_rounds)
    app.state.authenticator = RequestAuthenticator(codec, store)

    # -----------------------------------------------------------------------
    # Middleware stack -- add_middleware() wraps outward, so the last one
    # added is the first to see the request.
    # -----------------------------------------------------------------------

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.jwt_secret,
        session_cookie="oauth_session",
        max_age=10 * 60,
        same_site="lax",  # must survive the cross-site redirect back from the provider
        https_only=settings.secure_cookies,
    )
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )

    # SlowAPI looks for app.state.limiter by convention.
    limiter.enabled = settings.rate_limit_enabled
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

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(anilist_router, prefix="/api/v1", tags=["AniList"])

    _register_exception_handlers(app)

    @app.get("/api/v1/health", tags=["Health"])
    async def health(request: Request) -> HealthResponse:
        """Return API liveness, version, and database reachability."""
        try:
            request.app.state.store.ping()
            database = "ok"
        except Exception:
            logger.exception("Health check: database unreachable")
            database = "error"
        return HealthResponse(version=VERSION, components={"app": "ok", "database": database})

    return app


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        """Map a classified failure to its status code.

        Internal faults are logged with full detail and reported opaquely.
        """
        status_code = _STATUS_BY_KIND[exc.kind]
        if exc.kind is ErrorKind.internal:
            logger.error("Internal error on %s %s", request.method, request.url.path, exc_info=exc)
            return _error(status_code, "internal_error", "An unexpected error occurred.")
        return _error(status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Return 400 listing every violated field as "location.field: message"."""
        violations = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
            violations.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
        return _error(400, "validation_error", "Validation error", ", ".join(violations))

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Return 429 with a structured error and a Retry-After hint."""
        retry_after = int(getattr(exc, "retry_after", 60))
        response = _error(429, "rate_limited", "Too many requests, please try again later.", str(exc.detail))
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
        return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unexpected server errors.

        The raw exception is written to the log only, never to the response.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return _error(500, "internal_error", "An unexpected error occurred.")
