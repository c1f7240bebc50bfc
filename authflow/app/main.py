"""
FastAPI Application Factory
===========================

Entry point for the authentication service: browser login against a
Keycloak realm through the OIDC authorization code flow, with server-side
sessions kept in Redis.

Routers:
    - /auth/*       : Login initiation and provider callback
    - /dashboard/*  : Protected resources (session guard)
    - /health       : Liveness check
    - /             : Login entry point

Environment Variables Required:
    - KEYCLOAK_URL: Identity provider base address (e.g., "https://sso.example.com")
    - KEYCLOAK_REALM: Realm name
    - KEYCLOAK_CLIENT_ID: OAuth client ID
    - KEYCLOAK_CLIENT_SECRET: OAuth client secret
    - REDIRECT_URL: Callback URL (e.g., "https://app.example.com/auth/callback")
    - REDIS_HOST / REDIS_PORT / REDIS_DB / REDIS_PASSWORD: Session store
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn authflow.app.main:create_app --factory --reload --port 8080

    Production:
        authflow
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from .auth import LoginRedirect, auth_router
from .auth.flow import AuthFlowError
from .auth.provider import DiscoveryError, OIDCProviderClient
from .auth.session import clear_session_cookie
from .config import Settings, get_settings
from .dashboard import dashboard_router
from .store import KeyValueStore, StoreUnavailableError, create_store

logger = logging.getLogger("authflow.main")

SERVICE_NAME = "authflow"
SERVICE_VERSION = "1.0.0"


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


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Discover the identity provider (fatal on failure)
        - Connect the state store (unreachable store is logged, not fatal)

    Shutdown tasks:
        - Close the provider HTTP client and the store connection pool,
          unless they were injected by the caller
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    logger.info(
        "Starting authentication service",
        extra={
            "provider_url": settings.provider_url,
            "store_backend": settings.STORE_BACKEND,
            "log_level": settings.LOG_LEVEL,
        }
    )
    if not settings.COOKIE_SECURE:
        logger.warning("COOKIE_SECURE is off. Session cookies will be sent over plain HTTP.")

    owns_provider = app.state.provider is None
    owns_store = app.state.store is None

    if owns_provider:
        try:
            app.state.provider = await OIDCProviderClient.discover(settings)
        except DiscoveryError as e:
            logger.critical(f"Identity provider discovery failed: {e}")
            raise

    if owns_store:
        app.state.store = create_store(settings)

    store: KeyValueStore = app.state.store
    try:
        await store.ping()
    except StoreUnavailableError as e:
        logger.warning(f"State store not reachable at startup: {e}")

    logger.info(
        "Authentication service started",
        extra={"service": SERVICE_NAME, "version": SERVICE_VERSION}
    )

    yield

    # Shutdown
    logger.info("Shutting down authentication service")

    if owns_provider and app.state.provider is not None:
        await app.state.provider.aclose()
        app.state.provider = None

    if owns_store:
        try:
            await store.close()
        except Exception as e:
            logger.error(f"Error closing state store: {e}")
        app.state.store = None

    logger.info("Authentication service shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[OIDCProviderClient] = None,
    store: Optional[KeyValueStore] = None,
) -> FastAPI:
    """
    Application factory function.

    The provider client and store can be injected (tests, embedding);
    otherwise the lifespan creates them from settings.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        provider: Pre-built identity provider client
        store: Pre-built key-value store

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Authentication Service",
        description="OIDC authorization code login with server-side sessions",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.provider = provider
    app.state.store = store

    app.include_router(auth_router)
    app.include_router(dashboard_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {"status": "ok"}

    # Login entry point
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, str]:
        """
        Login entry point.

        Unauthenticated visitors to protected routes are sent here.

        Returns:
            dict: Service metadata and where to start a login
        """
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "login_url": auth_router.prefix + "/login",
        }

    @app.exception_handler(AuthFlowError)
    async def auth_flow_exception_handler(request: Request, exc: AuthFlowError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error, "message": exc.message},
        )

    @app.exception_handler(LoginRedirect)
    async def login_redirect_handler(request: Request, exc: LoginRedirect) -> RedirectResponse:
        logger.debug(
            "Redirecting to login",
            extra={"path": request.url.path, "reason": exc.reason}
        )
        response = RedirectResponse(
            url=settings.LOGIN_ENTRY_PATH,
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        )
        if exc.clear_cookie:
            clear_session_cookie(response, secure=settings.COOKIE_SECURE)
        return response

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            }
        )

    return app


def run() -> None:
    """
    Console entry point.

    Missing or invalid configuration stops the process before the server
    starts.
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging()
        logger.critical(f"Invalid configuration: {e}")
        raise SystemExit(1) from e

    uvicorn.run(
        create_app(settings),
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
