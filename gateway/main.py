"""
FastAPI Gateway Application Factory
===================================

Entry point for the authentication core of the reverse-proxy gateway.

Architecture:
    Browser → Gateway (this service) → Downstream apps (identity via X-Auth-* headers)
                  ↕
          Microsoft Entra ID (OIDC)

Routers:
    - /oauth/*                 : Login, callback, logout, status, direct-token sessions
    - /auth/create-code        : One-time code issuance (session required)
    - /internal/validate-code  : One-time code redemption (bearer shared secret)
    - /health                  : Health check endpoint

Running the Service:
    Development:
        uvicorn gateway.main:create_app --factory --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn gateway.main:create_app --factory --host 0.0.0.0 --port 8080

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn gateway.main:create_app --factory --reload
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from gateway import __version__
from gateway.auth.flow import AuthorizationRequestInitiator, CallbackProcessor, PendingRequestStore
from gateway.auth.idp import IdentityProviderClient
from gateway.auth.keys import KeySetCache
from gateway.auth.routes import build_auth_router
from gateway.auth.session import SessionStore
from gateway.auth.validation import TokenValidator
from gateway.codes import CodeExchangeStore, build_code_router
from gateway.config import Settings, ensure_valid_configuration, get_settings
from gateway.proxy import RequestAuthorizer
from gateway.stores import InMemoryTTLStore, TTLStore
from gateway.stores.redis import RedisTTLStore

logger = logging.getLogger("gateway.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def build_store(settings: Settings, name: str) -> TTLStore:
    """Create the TTL store backing one record type ("sessions", "codes", "pending")."""
    if settings.STORE_BACKEND == "redis":
        return RedisTTLStore.from_url(settings.REDIS_URL, prefix=f"gateway:{name}")
    return InMemoryTTLStore(name=name, sweep_interval=settings.STORE_SWEEP_INTERVAL_SECONDS)


class GatewayState:
    """
    Application state container, attached as ``app.state.gateway``.

    Holds the shared HTTP client, both key caches and their validators, the
    IdP client, the flow components and every store. One instance per app;
    nothing here is module-global.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS)
        )

        # Client-pushed tokens are revalidated against a shorter-lived key set
        self.direct_keys = KeySetCache(
            self.http_client,
            settings.jwks_uri,
            settings.JWKS_CACHE_SECONDS_DIRECT,
            name="direct",
            min_refresh_interval=settings.JWKS_MIN_REFRESH_INTERVAL_SECONDS,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        self.exchange_keys = KeySetCache(
            self.http_client,
            settings.jwks_uri,
            settings.JWKS_CACHE_SECONDS_EXCHANGE,
            name="exchange",
            min_refresh_interval=settings.JWKS_MIN_REFRESH_INTERVAL_SECONDS,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        self.direct_validator = TokenValidator(
            self.direct_keys,
            client_id=settings.AZURE_CLIENT_ID,
            issuers=settings.accepted_issuers,
            clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
        )
        self.exchange_validator = TokenValidator(
            self.exchange_keys,
            client_id=settings.AZURE_CLIENT_ID,
            issuers=settings.accepted_issuers,
            clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
        )

        self.idp = IdentityProviderClient(settings, self.http_client)
        self.sessions = SessionStore(build_store(settings, "sessions"), settings.SESSION_TTL_SECONDS)
        self.codes = CodeExchangeStore(build_store(settings, "codes"), settings.CODE_TTL_SECONDS)
        self.pending = PendingRequestStore(build_store(settings, "pending"), settings.PENDING_REQUEST_TTL_SECONDS)
        self.initiator = AuthorizationRequestInitiator(self.idp, self.pending)
        self.callbacks = CallbackProcessor(
            self.pending,
            self.idp,
            self.exchange_validator,
            self.sessions,
            popup_complete_path=settings.POPUP_COMPLETE_PATH,
        )

    @property
    def stores(self) -> List[TTLStore]:
        return [self.sessions.store, self.codes.store, self.pending.store]

    async def sweep(self) -> Dict[str, int]:
        return {
            "sessions": await self.sessions.sweep(),
            "codes": await self.codes.sweep(),
            "pending": await self.pending.store.sweep(),
        }

    async def close(self) -> None:
        for store in self.stores:
            await store.close()
        if self.owns_http_client:
            await self.http_client.aclose()


async def run_sweeper(state: GatewayState, interval: float) -> None:
    """Periodically drop expired sessions, codes and pending requests."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await state.sweep()
        except Exception as e:
            logger.error(f"Store sweep failed: {e}", exc_info=True)
            continue
        if any(removed.values()):
            logger.debug("Swept expired entries", extra=removed)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Validate configuration (fail closed on errors)
        - Start the periodic store sweeper

    Shutdown tasks:
        - Stop the sweeper
        - Close stores and the shared HTTP client
    """
    state: GatewayState = app.state.gateway
    settings = state.settings

    report = ensure_valid_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    sweeper = asyncio.create_task(run_sweeper(state, settings.STORE_SWEEP_INTERVAL_SECONDS))

    logger.info(
        "Gateway service started successfully",
        extra={
            "service": "edge-auth-gateway",
            "version": __version__,
            "store_backend": settings.STORE_BACKEND,
        },
    )

    yield

    # Shutdown
    logger.info("Shutting down gateway service")
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass

    await state.close()
    logger.info("Gateway service shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Gateway state (key caches, validators, stores)
        - Flow cookie (SessionMiddleware) and RequestAuthorizer middleware
        - Optional CORS for the direct-token endpoints
        - Route handlers and the global exception handler

    Args:
        settings: Settings to use; read from the environment when omitted
        http_client: Shared client for IdP calls; created (and closed on
                     shutdown) when omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Edge Auth Gateway",
        description="OIDC authentication core for a reverse-proxy gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.gateway = GatewayState(settings, http_client)

    # Middleware added later wraps earlier ones
    app.add_middleware(RequestAuthorizer)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.FLOW_SECRET_KEY,
        session_cookie=settings.FLOW_COOKIE_NAME,
        max_age=settings.PENDING_REQUEST_TTL_SECONDS,
        path=settings.cookie_path,
        same_site="lax",
        https_only=settings.SESSION_COOKIE_SECURE,
    )

    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(build_auth_router(settings))
    app.include_router(build_code_router(settings))

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "edge-auth-gateway",
            "version": __version__,
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response without
        any internal detail.
        """
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "gateway.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        log_level=settings.LOG_LEVEL.lower(),
    )
