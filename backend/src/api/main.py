"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import account, auth, health, oauth, session
from core.cache import TieredCache, set_tiered_cache
from core.config import get_settings
from core.redis import RedisClient, set_redis_client
from db.session import get_session_factory
from services.background import BackgroundTaskRunner
from services.container import build_components, get_components, set_components
from services.exceptions import (
    AuthError,
    BadRequestError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()

    # Startup: Connect to Redis (failure leaves the memory tier in charge)
    redis_client = RedisClient(
        url=app_settings.redis_url,
        enabled=app_settings.redis_enabled,
        pool_size=app_settings.redis_pool_size,
        socket_timeout=app_settings.redis_socket_timeout,
        cooldown_seconds=app_settings.redis_cooldown_seconds,
        max_cooldown_seconds=app_settings.redis_max_cooldown_seconds,
    )
    await redis_client.connect()
    set_redis_client(redis_client)

    # Startup: Initialize the tiered cache and the component graph
    cache = TieredCache(redis_client)
    set_tiered_cache(cache)
    http_client = httpx.AsyncClient(timeout=app_settings.oauth_timeout_seconds)
    runner = BackgroundTaskRunner()
    set_components(
        build_components(app_settings, cache, get_session_factory(), http_client, runner=runner),
    )

    yield

    # Shutdown: cancel background jobs, then release clients
    await runner.close()
    components = get_components()
    if components is not None:
        components.clear()
    set_components(None)
    set_tiered_cache(None)
    await http_client.aclose()
    await redis_client.close()
    set_redis_client(None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # HSTS: enforce HTTPS for 1 year, including subdomains
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        # Session and token payloads must never be stored by intermediaries
        response.headers["Cache-Control"] = "no-store"
        return response


app_settings = get_settings()

app = FastAPI(
    title="Sseudam API",
    description="Authentication, session and OAuth connection backend for the Sseudam app.",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_response(status_code: int, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.exception_handler(UnauthorizedError)
async def unauthorized_exception_handler(
    _request: Request, exc: UnauthorizedError,
) -> JSONResponse:
    """Rejected or missing credentials."""
    return JSONResponse(
        status_code=401,
        content={"detail": exc.message},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(BadRequestError)
async def bad_request_exception_handler(
    _request: Request, exc: BadRequestError,
) -> JSONResponse:
    """Request that cannot be served, such as a spent login ticket."""
    return _error_response(400, exc)


@app.exception_handler(NotFoundError)
async def not_found_exception_handler(
    _request: Request, exc: NotFoundError,
) -> JSONResponse:
    """Unknown session or account."""
    return _error_response(404, exc)


@app.exception_handler(ServiceUnavailableError)
async def service_unavailable_exception_handler(
    _request: Request, exc: ServiceUnavailableError,
) -> JSONResponse:
    """An upstream provider is unreachable or not configured."""
    logger.warning("service_unavailable: %s", exc.message)
    return _error_response(503, exc)


# Security headers middleware (runs after CORS, adds headers to responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(session.router)
app.include_router(oauth.router)
app.include_router(account.router)
