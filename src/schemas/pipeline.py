"""Pydantic schemas for the ingestion pipeline endpoints."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.db.enums import BatchStatus, ProjectState

# =============================================================================
# Request Schemas
# =============================================================================


class ProcessRequest(BaseModel):
    """Request to start an ingestion run."""

    file_ids: list[UUID] | None = Field(
        default=None,
        description="Files to process (None = all active files of the project)",
    )


# =============================================================================
# Response Schemas
# =============================================================================


class ProcessResponse(BaseModel):
    """Response after an ingestion run was submitted."""

    correlation_id: str = Field(description="Identifier of the ingestion run")
    project_id: UUID
    batch_count: int = Field(description="Number of batches created")
    file_count: int = Field(description="Number of files in the run")
    message: str

    model_config = ConfigDict(from_attributes=True)


class CorrelationProgressResponse(BaseModel):
    """Batch counts and durations of one ingestion run."""

    correlation_id: str
    project_id: UUID
    total_batches: int
    counts: dict[BatchStatus, int] = Field(description="Number of batches per status")
    percentage: float = Field(ge=0.0, le=100.0, description="Completed batches in percent")
    current_step: str
    estimated_duration_ms: int = Field(description="Predicted duration of the whole run")
    remaining_duration_ms: int = Field(description="Predicted time until the run finishes")
    errors: list[str] = Field(default_factory=list, description="Messages of failed batches")

    model_config = ConfigDict(from_attributes=True)


class ProjectProgressResponse(BaseModel):
    """Processing status of a project."""

    project_id: UUID
    state: ProjectState
    correlation_id: str | None = Field(default=None, description="Latest ingestion run")
    percentage: float = Field(ge=0.0, le=100.0)
    current_step: str
    estimated_duration_ms: int
    remaining_duration_ms: int

    model_config = ConfigDict(from_attributes=True)
