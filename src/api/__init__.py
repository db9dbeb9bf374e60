"""API routers for the kgforge knowledge graph service."""

from src.api.pipeline import router as pipeline_router
from src.api.query import router as query_router

__all__ = [
    "pipeline_router",
    "query_router",
]
