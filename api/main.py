"""
api/main.py -- FastAPI application entry point for campusgate.

Exposes the authentication, authorization and token-lifecycle core of the
school-management service over HTTP.

Run with:  python main.py serve
           uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces rate limits from api.limiter

Lifespan builds every long-lived collaborator once (stores, token issuer,
authentication gate, account flows, mailer), attaches them to app.state, and
disposes of them symmetrically on shutdown. Nothing in the request path
reaches for a module-level singleton except Settings.
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
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.internal import router as internal_router
from api.routes.v1.organization_users import router as organization_users_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.users import router as users_router
from auth.flows import AccountFlows
from auth.gate import AuthenticationGate
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.errors import ErrorKind, ServiceError, error_payload
from core.mailer import LogMailer, Mailer
from tenancy.store import TenancyStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("campusgate.api")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    tenancy: TenancyStore,
    mailer: Mailer,
) -> None:
    """Build the request-path collaborators on top of the stores and attach them to app.state.

    Shared by the real lifespan and by the test lifespan, so both run the
    exact same object graph.
    """
    issuer = TokenIssuer(
        user_store,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        default_ttl_seconds=settings.default_token_ttl_seconds,
    )
    app.state.user_store = user_store
    app.state.tenancy = tenancy
    app.state.issuer = issuer
    app.state.gate = AuthenticationGate(issuer, user_store, tenancy)
    app.state.flows = AccountFlows(user_store, tenancy, issuer, settings)
    app.state.mailer = mailer


# ---------------------------------------------------------------------------
# Lifespan: collaborators are built once and torn down in reverse
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.

    Startup order matters:
      1. Settings first -- a missing JWT_SECRET in production aborts here,
         before any database file is touched.
      2. Stores second -- both create their tables on the shared DATABASE_URL.
      3. Plans are seeded (idempotent) so tenants can be created right away.
      4. Issuer, gate and flows last -- they only borrow the stores.
    """
    settings = get_settings()
    logger.info("campusgate API starting up")
    user_store = UserStore(settings.database_url)
    tenancy = TenancyStore(settings.database_url)
    seeded = tenancy.seed_plans()
    if seeded:
        logger.info("Seeded %d plan(s)", seeded)
    attach_services(app, settings, user_store, tenancy, LogMailer())
    if not user_store.has_users():
        logger.warning("No users exist yet -- run 'python main.py seed' to create the super admin")

    yield

    # Shutdown
    tenancy.close()
    user_store.close()
    logger.info("campusgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="campusgate API",
    description="Authentication, authorization and token lifecycle for a multi-tenant school-management service.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-A-Token", "X-R-Token"],
    expose_headers=["Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Captures wall-clock time around call_next so latency is reported on every
# response. Only method and path are logged: query strings and headers can
# carry tokens.
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
app.include_router(organizations_router, prefix="/api/v1", tags=["Master"])
app.include_router(organization_users_router, prefix="/api/v1", tags=["Organization Users"])
app.include_router(internal_router, prefix="/api/v1", tags=["Internal"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {name, message, cause?} envelope so API clients
# can parse errors uniformly. ServiceError carries its own kind; every other
# exception type is mapped onto an ErrorKind here and nowhere else.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, payload: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(**payload).model_dump(exclude_none=True))


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.kind is ErrorKind.IMPLEMENTATION:
        logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, error_payload(exc))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(
        429,
        {
            "name": "TooManyRequestsError",
            "message": "Too many requests.",
            "cause": {"name": "RateLimitExceeded", "message": str(exc.detail)},
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with the field locations that failed; input values are not echoed back."""
    problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
    return _error_response(
        422,
        {
            "name": "ValidationError",
            "message": "Request validation failed.",
            "cause": {"name": "RequestValidationError", "message": problems},
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routing-level errors (404 unknown path, 405 wrong method) in the same envelope."""
    return _error_response(exc.status_code, {"name": f"Http{exc.status_code}Error", "message": str(exc.detail)})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """A unique constraint that no handler anticipated. The SQL is not returned."""
    logger.warning("Integrity error on %s %s", request.method, request.url.path)
    return _error_response(
        ErrorKind.CONFLICT.status_code,
        {"name": ErrorKind.CONFLICT.value, "message": "Resource already exists"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(
        ErrorKind.IMPLEMENTATION.status_code,
        {"name": ErrorKind.IMPLEMENTATION.value, "message": "An unexpected error occurred."},
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives next to the app object, outside the versioned routers, so probes
# keep working whatever router set is mounted. Not rate limited: health
# checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness and database reachability."""
    tenancy: TenancyStore = request.app.state.tenancy
    database = "ok" if tenancy.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
