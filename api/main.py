"""
api/main.py -- FastAPI application entry point for the portal auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- one access-log line per request
  5. authorization_filter  -- resolves the bearer token into request.state.identity
  6. enforce_policy        -- applies the access policy table (401 / 403)

Lifespan builds every auth collaborator exactly once (signing key, token
codec, password hasher, store, verifier, policy) and stores them on
app.state. Nothing in auth/ reads configuration on its own.
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
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthorizationFailure, DuplicateAccountError
from auth.filter import authenticate_request
from auth.passwords import PasswordHasher
from auth.policy import AccessPolicy, Verdict, default_policy
from auth.roles import catalog_roles
from auth.store import UserStore
from auth.tokens import SigningKey, TokenCodec
from auth.verifier import CredentialVerifier
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("portal.api")


# ---------------------------------------------------------------------------
# Service assembly
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings, store: UserStore) -> None:
    """Wire auth collaborators onto app.state around an existing store.

    Split out of lifespan so tests can hand in an in-memory store and still
    get the production wiring for everything else.
    """
    store.seed_roles(catalog_roles())
    codec = TokenCodec(
        SigningKey(settings.secret_key),
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
    )
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    app.state.user_store = store
    app.state.codec = codec
    app.state.hasher = hasher
    app.state.verifier = CredentialVerifier(store, codec, hasher, max_attempts=settings.max_login_attempts)
    app.state.policy = default_policy(unmatched=settings.policy_unmatched_default)


def bootstrap_admin(app: FastAPI, settings: Settings) -> None:
    """Create the first ROLE_ADMIN principal if the store has no users yet."""
    store: UserStore = app.state.user_store
    if store.has_users():
        return
    if not settings.bootstrap_admin_password:
        logger.warning("No users exist and BOOTSTRAP_ADMIN_PASSWORD is unset -- nobody can log in yet")
        return
    try:
        app.state.verifier.create_principal(
            settings.bootstrap_admin_username,
            settings.bootstrap_admin_password,
            settings.bootstrap_admin_email,
            roles=["ROLE_ADMIN"],
            full_name="Administrator",
        )
    except DuplicateAccountError:
        # Another worker won the race.
        return
    logger.info("Bootstrap administrator %s created", settings.bootstrap_admin_username)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build auth services on startup; dispose the store engine on shutdown.

    The signing key is constructed here, eagerly, so a bad SECRET_KEY fails
    startup instead of the first login.
    """
    settings = get_settings()
    logger.info("Portal auth API starting up")
    store = UserStore(settings.database_url, timeout=settings.store_timeout_seconds)
    build_services(app, settings, store)
    bootstrap_admin(app, settings)
    logger.info(
        "Auth initialized (access_ttl=%ss, refresh_ratio=%d, max_attempts=%d, unmatched=%s)",
        settings.access_token_expire_seconds,
        settings.refresh_token_ratio,
        settings.max_login_attempts,
        settings.policy_unmatched_default,
    )

    yield

    app.state.user_store.close()
    logger.info("Portal auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Portal Auth API",
    description="Authentication, account security and role-based authorization for the internal portal.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette applies add_middleware() so the LAST registered is outermost.
# @app.middleware("http") functions are added the same way, so the order
# below (policy, filter, logging, then SlowAPI, CORS, TrustedHost) yields
# the outermost-to-innermost order listed in the module docstring.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
        headers=headers,
    )


@app.middleware("http")
async def enforce_policy(request: Request, call_next):
    """Reject the request unless the access policy permits it.

    Runs after authorization_filter, so request.state.identity is set.
    CORS preflights carry no credentials and are always let through.
    """
    if request.method == "OPTIONS":
        return await call_next(request)
    policy: AccessPolicy = request.app.state.policy
    identity = getattr(request.state, "identity", None)
    verdict = policy.evaluate(request.url.path, identity, request.method)
    if verdict is Verdict.UNAUTHENTICATED:
        return _error(401, "unauthorized", "Authentication required.", {"WWW-Authenticate": "Bearer"})
    if verdict is Verdict.FORBIDDEN:
        logger.warning("Forbidden: %s %s for %s", request.method, request.url.path, identity.subject)
        return _error(
            403,
            AuthorizationFailure.INSUFFICIENT_ROLE.value,
            "You do not have permission to perform this action.",
        )
    return await call_next(request)


@app.middleware("http")
async def authorization_filter(request: Request, call_next):
    """Resolve the bearer token (if any) into request.state.identity. Never rejects."""
    authenticate_request(request, request.app.state.codec)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. We capture wall-clock time
# before and after call_next so we can report latency on every response,
# including 401/403 answered by the policy middleware.
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


app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. Use it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the credential store answers."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: credential store unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
