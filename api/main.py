"""
api/main.py -- FastAPI application entry point for Homeboard.

Run with:      python main.py serve
               uvicorn api.main:app --no-proxy-headers

Middleware stack (outermost to innermost):
  1. log_requests           -- method, path, status, latency, peer address
  2. TrustedHostMiddleware  -- rejects requests with unexpected Host headers
  3. resolve_identity       -- runs IdentityResolver once, stores request.state.identity
  4. SlowAPIMiddleware      -- enforces per-route rate limits from api.limiter
  5. CORSMiddleware         -- adds CORS headers for allowed browser origins

Lifespan: migrations run to completion before any store is wired and before
the listener accepts a request. A refused migration (downgrade, failed step)
propagates out of the lifespan and the server never starts.

The peer address the whitelist sees is request.client.host. uvicorn must
run with proxy_headers=False, otherwise it rewrites client.host from
X-Forwarded-For -- a header any client can send.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.system import router as system_router
from auth.config_store import SystemConfigStore
from auth.dependencies import request_meta_from
from auth.models import ANONYMOUS
from auth.provisioning import UserProvisioner
from auth.resolver import IdentityResolver
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import Settings, get_settings
from core.log import configure_logging
from database.engine import create_db_engine
from database.runner import MigrationRunner, run_startup_migrations

APP_VERSION = "0.1.0"

logger = logging.getLogger("homeboard.api")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_app_state(app: FastAPI, engine: Engine, settings: Settings) -> None:
    """Build the stores and the resolver on one engine and attach them to app.state.

    Called by the lifespan after migrations, and by tests with their own
    engine and settings.
    """
    user_store = UserStore(engine)
    session_store = SessionStore(engine, secret_key=settings.secret_key)
    config_store = SystemConfigStore(engine)
    provisioner = UserProvisioner(
        user_store,
        default_group=lambda: config_store.get_auth_config().default_group,
    )
    resolver = IdentityResolver(
        load_proxy_config=config_store.get_proxy_config,
        sessions=session_store,
        provisioner=provisioner,
        cookie_name=settings.session_cookie_name,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.user_store = user_store
    app.state.session_store = session_store
    app.state.config_store = config_store
    app.state.provisioner = provisioner
    app.state.resolver = resolver
    app.state.whitelist = resolver.matcher
    app.state.migration_runner = MigrationRunner.from_settings(engine, settings)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Migrate, wire, serve, dispose.

    Startup order matters:
      1. Logging first so migration output is formatted.
      2. Migrations second -- the stores assume the current schema.
      3. Stores and resolver last.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Homeboard %s starting up", APP_VERSION)

    engine = create_db_engine(settings.database_url)
    try:
        result = run_startup_migrations(MigrationRunner.from_settings(engine, settings))
    except Exception:
        engine.dispose()
        raise
    logger.info("Database ready at schema v%d (%s)", result.migrated_to, result.state.value)

    wire_app_state(app, engine, settings)
    purged = app.state.session_store.purge_expired()
    if purged:
        logger.info("Removed %d expired sessions", purged)

    yield

    engine.dispose()
    logger.info("Homeboard shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Homeboard API",
    description="Self-hosted dashboard: identity and administration endpoints.",
    version=APP_VERSION,
    lifespan=lifespan,
)

_settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Identity resolution middleware
#
# Exactly one identity decision per request. The resolver does blocking
# storage I/O, so it runs in the threadpool like a sync route handler.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def resolve_identity(request: Request, call_next):
    resolver: IdentityResolver | None = getattr(request.app.state, "resolver", None)
    if resolver is None:
        request.state.identity = ANONYMOUS
    else:
        request.state.identity = await run_in_threadpool(resolver.resolve, request_meta_from(request))
    return await call_next(request)


# Wraps resolve_identity: a bad Host header is refused before any identity
# work or user provisioning.
app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Request logging middleware
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
app.include_router(system_router, prefix="/api/v1", tags=["System"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves as {"error": {"code", "message", "detail"?}}. Routes that
# raise HTTPException with a dict detail choose their own code; anything else
# gets a generic one.
# ---------------------------------------------------------------------------


def error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    retry_after = str(int(getattr(exc, "retry_after", 60)))
    return error_response(429, "rate_limited", "Too many requests.", str(exc), headers={"Retry-After": retry_after})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit and no auth -- monitoring must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, the stamped schema version and a database probe."""
    runner: MigrationRunner | None = getattr(request.app.state, "migration_runner", None)
    components = {"app": "ok", "database": "ok"}
    schema_version = None
    if runner is None:
        components["database"] = "error"
    else:
        try:
            schema_version = runner.check_migration_status().current_version
        except SQLAlchemyError:
            logger.exception("Health check could not reach the database")
            components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=APP_VERSION, schema_version=schema_version, components=components)
