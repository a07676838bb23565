"""
FastAPI Application

Main entry point for the Category-Attribute Catalog API.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from catalog.config import get_settings
from catalog.config.logging import configure_logging
from catalog.database.connection import close_database, init_database
from catalog.serving.api import RequestLoggingMiddleware, register_exception_handlers
from catalog.serving.api.routes import (
    attributes_router,
    categories_router,
    health_router,
    products_router,
)
from catalog.serving.cache import close_redis, init_redis

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()

    logger.info("Starting Catalog API", environment=settings.app_env, version=settings.version)

    try:
        await init_database()
    except Exception as e:
        # Readiness probe reports the database as down until it recovers
        logger.error("Database init failed", error=str(e))

    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis init failed, tree cache disabled", error=str(e))

    yield

    logger.info("Shutting down...")
    await close_database()
    await close_redis()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Category-Attribute Catalog API",
        description="Category tree, attribute applicability and product attribute values",
        version=settings.version,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(categories_router, prefix="/api/v1/categories", tags=["Categories"])
    app.include_router(attributes_router, prefix="/api/v1/attributes", tags=["Attributes"])
    app.include_router(products_router, prefix="/api/v1/products", tags=["Products"])

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve with uvicorn using the configured host/port."""
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
