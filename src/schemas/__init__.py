"""Pydantic schemas for API request/response models."""

from src.schemas.common import BAD_GATEWAY, CONFLICT, NOT_FOUND, ErrorResponse
from src.schemas.pipeline import (
    CorrelationProgressResponse,
    ProcessRequest,
    ProcessResponse,
    ProjectProgressResponse,
)
from src.schemas.query import (
    QueryMessage,
    QueryRequest,
    QueryResponse,
    TraceResponse,
)

__all__ = [
    # Common
    "BAD_GATEWAY",
    "CONFLICT",
    "NOT_FOUND",
    "ErrorResponse",
    # Pipeline
    "CorrelationProgressResponse",
    "ProcessRequest",
    "ProcessResponse",
    "ProjectProgressResponse",
    # Query
    "QueryMessage",
    "QueryRequest",
    "QueryResponse",
    "TraceResponse",
]
