"""
Main FastAPI application.

Subscription billing API with:
- Checkout creation across five payment providers
- Verified, idempotent webhook reconciliation
- Partner commission and payouts
- Request ID tracking and structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from subscription_billing import __version__
from subscription_billing.config import Settings, get_settings
from subscription_billing.core.exceptions import BillingError
from subscription_billing.database import Database
from subscription_billing.integrations.providers import ProviderVerifier, build_providers
from subscription_billing.monitoring.logging import setup_logging

from .dependencies import build_services
from .routes import (
    account_router,
    admin_router,
    checkout_router,
    internal_router,
    monitoring_router,
    partner_router,
    subscription_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings
    database: Database = app.state.database

    setup_logging(settings)
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    try:
        await database.create_all()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    http_client: Optional[httpx.AsyncClient] = app.state.http_client
    if http_client is not None:
        await http_client.aclose()
    try:
        await database.dispose()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    providers: Optional[Dict[str, ProviderVerifier]] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use (loaded from the environment if omitted)
        database: Database to use (built from settings if omitted)
        providers: Provider adapters (built from settings if omitted)

    Returns:
        FastAPI: Configured application with services on ``app.state``
    """
    settings = settings or get_settings()
    database = database or Database.from_settings(settings)

    http_client = None
    if providers is None:
        http_client = httpx.AsyncClient(timeout=30.0)
        providers = build_providers(settings, http_client=http_client)

    app = FastAPI(
        title="Subscription Billing",
        description=(
            "Payment reconciliation and commission engine for subscription plans. "
            "Features: multi-provider checkout, verified webhooks, idempotent "
            "activation, expiry sweeps, partner commission and payouts."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.database = database
    app.state.http_client = http_client
    app.state.services = build_services(settings, database, providers)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        An inbound X-Request-ID is kept so traces span the gateway.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
        """Map domain errors to their HTTP status and error body."""
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "request_rejected",
            error_code=exc.error_code,
            error=exc.message,
            status_code=exc.http_status,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                }
            },
        )

    app.include_router(checkout_router)
    app.include_router(webhook_router)
    app.include_router(account_router)
    app.include_router(subscription_router)
    app.include_router(partner_router)
    app.include_router(admin_router)
    app.include_router(internal_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "providers": sorted(providers),
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "subscription_billing.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
