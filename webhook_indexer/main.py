"""
Main FastAPI application for the Solana webhook indexer.
Configures the API server with routes, middleware and service lifecycle.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from webhook_indexer.api.middleware import add_middleware
from webhook_indexer.api.routes import credentials, indexers, subscriptions, webhooks
from webhook_indexer.api.schemas.common import APIResponse, HealthCheckResponse
from webhook_indexer.core.config import settings
from webhook_indexer.core.database import DatabaseManager, close_database, init_database
from webhook_indexer.core.exceptions import WebhookIndexerException
from webhook_indexer.core.logging import setup_logging
from webhook_indexer.indexer.core.base import STORAGE_ERRORS
from webhook_indexer.services.connection_manager import close_connection_manager, get_connection_manager
from webhook_indexer.services.dispatcher import get_dispatcher
from webhook_indexer.services.helius_client import close_helius_client
from webhook_indexer.services.indexer_service import get_indexer_service
from webhook_indexer.services.mapping_registry import get_mapping_registry
from webhook_indexer.services.metadata_fetcher import close_metadata_fetcher


logger = structlog.get_logger(__name__)

# Seconds to wait for in-flight dispatches at shutdown
SHUTDOWN_DRAIN_TIMEOUT = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting webhook indexer", environment=settings.environment)

    await init_database()
    try:
        await get_indexer_service().restore_mappings()
    except (WebhookIndexerException,) + STORAGE_ERRORS as e:
        logger.error("Failed to restore webhook mappings", error=str(e))

    yield

    logger.info("Shutting down webhook indexer")

    try:
        await asyncio.wait_for(get_dispatcher().drain(), timeout=SHUTDOWN_DRAIN_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Pending dispatches did not finish before shutdown")

    await close_connection_manager()
    await close_helius_client()
    await close_metadata_fetcher()
    await close_database()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Webhook-driven indexing of Solana events into tenant-owned PostgreSQL tables.",
        version=settings.app_version,
        lifespan=lifespan,
    )

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Database status and dispatcher counters"
    )
    async def health_check():
        stats = {
            "dispatcher": get_dispatcher().get_stats(),
            "webhook_mappings": len(get_mapping_registry()),
            "tenant_pools": get_connection_manager().open_pools,
        }
        if not await DatabaseManager.health_check():
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "services": {"database": "unhealthy", "api": "healthy"},
                    "stats": stats,
                }
            )
        return HealthCheckResponse(
            status="healthy",
            version=settings.app_version,
            services={"database": "healthy", "api": "healthy"},
            stats=stats,
        )

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        return APIResponse(message=f"{settings.app_name} v{settings.app_version}")

    app.include_router(webhooks.router, tags=["Webhooks"])

    app.include_router(
        indexers.router,
        prefix=f"{settings.api_v1_prefix}/indexers",
        tags=["Indexers"]
    )

    app.include_router(
        credentials.router,
        prefix=f"{settings.api_v1_prefix}/credentials",
        tags=["Credentials"]
    )

    app.include_router(
        subscriptions.router,
        prefix=f"{settings.api_v1_prefix}/subscriptions",
        tags=["Subscriptions"]
    )

    logger.info("FastAPI application created successfully")
    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "webhook_indexer.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
