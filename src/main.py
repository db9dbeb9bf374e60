"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api import pipeline_router, query_router
from src.core.config import settings
from src.core.logging import get_logger, setup_logging
from src.db import dispose_engine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown events."""
    setup_logging()
    logger.info("Starting kgforge API", environment=settings.environment)
    yield
    await dispose_engine()
    logger.info("kgforge API stopped")


def create_app() -> FastAPI:
    """Application factory for creating the FastAPI instance."""
    app = FastAPI(
        title="kgforge API",
        description=(
            "Builds knowledge graphs from project files and answers questions over them.\n\n"
            "## Features\n"
            "- **Pipeline**: Batch files, extract entities and relationships, follow progress\n"
            "- **Query**: Local, global and agentic retrieval-augmented answers with citations\n"
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    app.include_router(pipeline_router, prefix="/api/v1", tags=["Pipeline"])
    app.include_router(query_router, prefix="/api/v1", tags=["Query"])

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy", "version": "0.1.0"}

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "service": "kgforge API",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health",
        }

    return app


# Create the app instance
app = create_app()
