"""
api/main.py -- FastAPI application entry point for the Skillmap gateway.

Install:  pip install -e ".[test]"
Run with: uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter

Lifespan builds every store and service once and hangs them on app.state;
route handlers and auth dependencies read them from there. Shutdown closes
them symmetrically.
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
from sqlalchemy.engine import Engine

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.mcp import builtin_handler
from api.routes.mcp import router as mcp_router
from api.routes.oauth import router as oauth_router
from api.routes.v1.api_keys import router as api_keys_router
from auth.api_keys import ApiKeyManager
from auth.errors import AuthFlowError
from auth.idp import AuthlibIdentityProvider
from auth.orchestrator import AuthorizationOrchestrator
from auth.pkce import PkceManager
from auth.ports import IdentityProvider
from auth.provider import OAuthProvider
from auth.sessions import SessionStore, SessionValidator
from auth.store import ApiKeyStore, UserStore, create_auth_engine
from cache.store import KeyValueStore, open_kv_store
from core.config import Settings, get_settings
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
logger = logging.getLogger("skillmap.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    state,
    settings: Settings,
    kv: KeyValueStore,
    session_kv: KeyValueStore,
    engine: Engine,
    idp: IdentityProvider,
) -> None:
    """Build every service from its stores and attach it to app.state.

    Shared by the real lifespan and the test lifespan, so tests exercise the
    same object graph with in-memory stores and a fake identity provider.
    """
    state.settings = settings
    state.kv = kv
    state.session_kv = session_kv
    state.user_store = UserStore(engine)
    state.api_key_store = ApiKeyStore(engine)
    state.idp = idp

    state.pkce = PkceManager(kv, logger=logging.getLogger("skillmap.auth.pkce"))
    state.sessions = SessionStore(session_kv)
    state.session_validator = SessionValidator(
        state.sessions, session_kv, idp, logger=logging.getLogger("skillmap.auth.sessions")
    )
    state.oauth_provider = OAuthProvider(kv, settings=settings)
    state.api_keys = ApiKeyManager(state.api_key_store, state.user_store)
    state.orchestrator = AuthorizationOrchestrator(
        provider=state.oauth_provider,
        pkce=state.pkce,
        sessions=state.sessions,
        validator=state.session_validator,
        idp=idp,
        directory=state.user_store,
        central_login_url=settings.central_login_url,
    )
    state.mcp_handler = builtin_handler


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired key-value entries every hour.

    Only the SQLite backend needs this; memory and Redis expire entries on
    their own. CancelledError from task.cancel() during shutdown propagates out
    of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        for store in {id(s): s for s in (app.state.kv, app.state.session_kv)}.values():
            purge = getattr(store, "purge_expired", None)
            if purge is not None:
                removed = purge()
                logger.info("Purged %d expired key-value entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("Skillmap gateway starting up")

    kv = open_kv_store(settings.kv_url)
    session_url = settings.effective_session_store_url
    session_kv = kv if session_url == settings.kv_url else open_kv_store(session_url)
    engine = create_auth_engine(settings.database_url)
    wire_services(app.state, settings, kv, session_kv, engine, AuthlibIdentityProvider(settings))
    logger.info(
        "Auth initialized (centralized_login=%s, shared_session_store=%s)",
        bool(settings.central_login_url),
        session_kv is not kv,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    if session_kv is not kv:
        session_kv.close()
    kv.close()
    engine.dispose()
    logger.info("Skillmap gateway shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Skillmap Gateway",
    description="OAuth 2.1 and API-key authentication in front of the Team Skillmap MCP server.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "Mcp-Session-Id"],
    expose_headers=["WWW-Authenticate"],
    max_age=3600,
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

app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])
app.include_router(oauth_router, tags=["OAuth"])
app.include_router(mcp_router, tags=["MCP"])
# Browser routes (/authorize, /callback, /logout) are mounted by asgi.py.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After."""
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
    """Return a structured error for all FastAPI HTTP exceptions.

    Route handlers and auth dependencies raise HTTPException with a dict
    detail; it becomes the error field as-is. Headers (WWW-Authenticate on
    401s) are passed through.
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


@app.exception_handler(AuthFlowError)
async def auth_flow_error_handler(request: Request, exc: AuthFlowError) -> JSONResponse:
    """AuthFlowError escaping an API route: status, code and message are client-safe by contract."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged server-side only, never written to the
    response body.
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
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit -- load balancer probes must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus the state of the relational and key-value stores."""
    components = {"app": "ok", "database": "ok", "kv_store": "ok"}
    try:
        request.app.state.user_store.ping()
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)
        components["database"] = "error"
    try:
        request.app.state.kv.get("health:probe")
    except Exception:
        logger.warning("Health check: key-value store unreachable", exc_info=True)
        components["kv_store"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
