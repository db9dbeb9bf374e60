"""Common Pydantic schemas used across API endpoints."""

from pydantic import BaseModel, Field

# =============================================================================
# Error Responses
# =============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(description="Human-readable error message")


# Shared `responses=` declarations for route decorators
NOT_FOUND = {404: {"model": ErrorResponse, "description": "Project or correlation not found"}}
CONFLICT = {409: {"model": ErrorResponse, "description": "Project is locked by another worker"}}
BAD_GATEWAY = {502: {"model": ErrorResponse, "description": "Graph store query failed"}}
