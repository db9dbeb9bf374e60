"""
Ingestion pipeline endpoints.

Architecture:
    POST /projects/{id}/process
        → Partitions the files into batches of a new correlation id
        → Dispatches preprocess_batch_task per batch to the Celery queue
        → Returns 202 Accepted immediately

    Celery Worker (separate process)
        → preprocess: split, extract, stage
        → index: write graph under the project lock, dedupe, describe

    GET /projects/{id}/progress, GET /correlations/{id}/progress
        → Read batch statuses and duration estimates from the database
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from src.api.deps import get_orchestrator
from src.core.exceptions import LockBusyError, NotFoundError
from src.schemas import (
    CONFLICT,
    NOT_FOUND,
    CorrelationProgressResponse,
    ProcessRequest,
    ProcessResponse,
    ProjectProgressResponse,
)
from src.services.orchestrator import BatchOrchestrator

router = APIRouter()


@router.post(
    "/projects/{project_id}/process",
    response_model=ProcessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**NOT_FOUND, **CONFLICT},
    summary="Start an ingestion run",
    description=(
        "Split the project's files into batches and queue them for extraction. "
        "Use the progress endpoints to follow the run."
    ),
)
async def process_project(
    project_id: UUID,
    request: ProcessRequest | None = None,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> ProcessResponse:
    """Submit files for processing."""
    file_ids = request.file_ids if request else None
    try:
        submission = await orchestrator.submit_files(project_id, file_ids)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except LockBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Project is being indexed, try again later") from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return ProcessResponse(
        correlation_id=submission.correlation_id,
        project_id=submission.project_id,
        batch_count=submission.batch_count,
        file_count=submission.file_count,
        message=(
            f"Ingestion run queued with {submission.batch_count} batches. "
            f"Use GET /correlations/{submission.correlation_id}/progress to check status."
        ),
    )


@router.get(
    "/projects/{project_id}/progress",
    response_model=ProjectProgressResponse,
    responses=NOT_FOUND,
    summary="Get project processing progress",
)
async def get_project_progress(
    project_id: UUID,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> ProjectProgressResponse:
    try:
        progress = await orchestrator.project_progress(project_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return ProjectProgressResponse.model_validate(progress)


@router.get(
    "/correlations/{correlation_id}/progress",
    response_model=CorrelationProgressResponse,
    responses=NOT_FOUND,
    summary="Get ingestion run progress",
    description="Batch counts per status and estimated/remaining duration of one run.",
)
async def get_correlation_progress(
    correlation_id: str,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> CorrelationProgressResponse:
    try:
        progress = await orchestrator.correlation_progress(correlation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return CorrelationProgressResponse.model_validate(progress)
