"""
api/main.py -- FastAPI application entry point for Rollcall.

Exposes the principal, class and membership services as a JSON API under
/api/v1. The server-rendered login / consent pages live in web/ and are
mounted by asgi.py.

Run with:  python main.py serve
           uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter
  4. SessionMiddleware     -- signed "rollcall_oauth" cookie holding the /me OAuth2 state and the form CSRF token

Lifespan builds one SQLAlchemy engine shared by both stores, the hook chain,
the services and the consent orchestrator, and puts them on app.state.
Shutdown closes the bus publisher and disposes the engine.
"""

from __future__ import annotations

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
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.classes import router as classes_router
from auth.consent import ConsentOrchestrator
from auth.hydra import AuthorizationServer
from auth.service import PrincipalService
from auth.store import PrincipalStore
from bus.hooks import PropagationHook
from bus.publisher import ConsistencyPropagator, Publisher, make_publisher
from classes.models import Role
from classes.service import MembershipEngine
from classes.store import ClassStore
from core.config import Settings, get_settings
from core.db import make_engine, scratch_database_url
from core.errors import ServiceError
from core.hooks import HookChain, LoggingHook
from core.limiter import limiter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("rollcall.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    engine: Engine,
    server: AuthorizationServer,
    publisher: Publisher,
    settings: Settings,
) -> None:
    """Build the service graph on top of engine and attach it to app.state.

    Both stores share the engine so that account deletion can check class
    ownership and purge memberships inside the same transaction that
    deactivates the principal.
    """
    hooks = HookChain([LoggingHook(), PropagationHook(ConsistencyPropagator(publisher))])

    principal_store = PrincipalStore(engine=engine)
    class_store = ClassStore(engine=engine)
    memberships = MembershipEngine(class_store, hooks=hooks, default_role=Role(settings.default_member_role))
    principals = PrincipalService(principal_store, hooks=hooks, memberships=memberships)

    app.state.engine = engine
    app.state.publisher = publisher
    app.state.hooks = hooks
    app.state.principal_store = principal_store
    app.state.class_store = class_store
    app.state.principals = principals
    app.state.memberships = memberships
    app.state.authorization_server = server
    app.state.consent = ConsentOrchestrator(
        server,
        principals,
        bypass_scope=settings.consent_bypass_scope,
        trusted_client_ids=settings.trusted_client_ids,
        timeout=settings.upstream_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build resources on startup and release them on shutdown."""
    settings = get_settings()
    logger.info("Rollcall API starting up (dry_run=%s)", settings.dry_run)

    scratch = None
    db_url = settings.database_url
    if settings.dry_run:
        db_url, scratch = scratch_database_url()
    engine = make_engine(db_url, settings.database_timeout_seconds)
    publisher = make_publisher("" if settings.dry_run else settings.bus_url, settings.bus_timeout_seconds)
    wire_services(app, engine, AuthorizationServer(settings), publisher, settings)
    logger.info("Services initialized (bus=%s)", type(publisher).__name__)

    yield

    app.state.publisher.close()
    app.state.engine.dispose()
    if scratch is not None:
        scratch.cleanup()
    logger.info("Rollcall API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Rollcall API",
    description="Accounts, classes and memberships, with OAuth2 consent handled by the web pages.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="rollcall_oauth",
    https_only=_settings.secure_cookies,
    same_site="lax",
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

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

app.include_router(auth_router, prefix="/api/v1", tags=["Accounts"])
app.include_router(classes_router, prefix="/api/v1", tags=["Classes"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Map a typed domain failure onto its status code and stable error code."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(exclude_none=True),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
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

    Route dependencies raise HTTPException with a dict detail; use it directly
    as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only; the client gets a generic message.
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
# Defined directly in main.py so it is always reachable. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the database answers."""
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except Exception as exc:
        logger.warning("health check: database unavailable: %s", exc)
        database = "unavailable"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=VERSION,
        components={"database": database},
    )
