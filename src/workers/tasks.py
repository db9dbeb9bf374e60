"""
Celery tasks for the graph pipeline.

Each task bridges Celery's synchronous execution model with the async
orchestrator using asyncio.run(). A task gets its own engine because the
module-level engine is bound to the event loop that created it.

Usage:
    # From the API (dispatch to queue):
    from src.workers.tasks import CeleryDispatcher
    orchestrator = BatchOrchestrator(ai, dispatcher=CeleryDispatcher())

    # Start worker:
    celery -A src.workers.celery_app worker -l info -P solo -Q graph_pipeline
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from src.core.config import settings
from src.core.logging import bind_context, clear_context, get_logger
from src.services.ai_client import get_ai_client
from src.services.orchestrator import BatchOrchestrator, TaskDispatcher
from src.workers.celery_app import celery_app

logger = get_logger(__name__)

T = TypeVar("T")


class CeleryDispatcher(TaskDispatcher):
    """Queues the next batch stage on the graph_pipeline queue."""

    def dispatch_preprocess(self, correlation_id: str, batch_id: int) -> None:
        preprocess_batch_task.delay(correlation_id, batch_id)

    def dispatch_index(self, correlation_id: str, batch_id: int) -> None:
        index_batch_task.delay(correlation_id, batch_id)


async def _with_orchestrator(work: Callable[[BatchOrchestrator], Awaitable[T]], db_url: str) -> T:
    """Run `work` with an orchestrator bound to a task-local engine."""
    engine = create_async_engine(db_url, echo=False, pool_pre_ping=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    try:
        async with get_ai_client() as ai:
            orchestrator = BatchOrchestrator(ai, session_factory=session_factory, dispatcher=CeleryDispatcher())
            try:
                return await work(orchestrator)
            finally:
                await orchestrator.aclose()
    finally:
        await engine.dispose()


@celery_app.task(
    name="src.workers.tasks.preprocess_batch_task",
    bind=True,
    acks_late=True,
)
def preprocess_batch_task(self, correlation_id: str, batch_id: int) -> dict:
    """
    Celery task: split and extract the files of one batch, stage the result.

    Dispatches index_batch_task when the batch reaches PREPROCESSED.
    """
    bind_context(correlation_id=correlation_id, batch_id=batch_id, task_id=self.request.id)
    logger.info("Celery worker: preprocessing batch")
    try:
        claimed = asyncio.run(
            _with_orchestrator(lambda o: o.preprocess_batch(correlation_id, batch_id), settings.db_url)
        )
        return {"correlation_id": correlation_id, "batch_id": batch_id, "claimed": claimed}
    finally:
        clear_context()


@celery_app.task(
    name="src.workers.tasks.index_batch_task",
    bind=True,
    acks_late=True,
)
def index_batch_task(self, correlation_id: str, batch_id: int) -> dict:
    """Celery task: write a preprocessed batch into the project graph."""
    bind_context(correlation_id=correlation_id, batch_id=batch_id, task_id=self.request.id)
    logger.info("Celery worker: indexing batch")
    try:
        claimed = asyncio.run(
            _with_orchestrator(lambda o: o.index_batch(correlation_id, batch_id), settings.db_url)
        )
        return {"correlation_id": correlation_id, "batch_id": batch_id, "claimed": claimed}
    finally:
        clear_context()


@celery_app.task(name="src.workers.tasks.reset_stale_batches_task")
def reset_stale_batches_task() -> dict:
    """Celery beat task: reset batches stuck in a processing state."""
    resets = asyncio.run(_with_orchestrator(lambda o: o.reset_stale_batches(), settings.db_url))
    if resets:
        logger.info("Celery worker: stale batches reset", count=len(resets))
    return {
        "reset": [
            {"correlation_id": r.correlation_id, "batch_id": r.batch_id, "status": r.status.value}
            for r in resets
        ]
    }


@celery_app.task(name="src.workers.tasks.cleanup_staging_task")
def cleanup_staging_task() -> dict:
    """Celery beat task: delete staged rows past the retention window."""
    deleted = asyncio.run(_with_orchestrator(lambda o: o.cleanup_staging(), settings.db_url))
    return {"deleted": deleted}


@celery_app.task(
    name="src.workers.tasks.delete_files_task",
    bind=True,
    acks_late=True,
)
def delete_files_task(self, project_id: str, file_ids: list[str] | None = None) -> dict:
    """
    Celery task: remove deleted files from a project graph.

    Soft-deletes `file_ids` first when given, then purges every deleted
    file of the project and regenerates the descriptions it affected.
    """
    bind_context(project_id=project_id, task_id=self.request.id)
    logger.info("Celery worker: deleting files")
    ids = [uuid.UUID(fid) for fid in file_ids] if file_ids else None
    try:
        removal = asyncio.run(
            _with_orchestrator(lambda o: o.delete_files(uuid.UUID(project_id), ids), settings.db_url)
        )
        return {
            "project_id": project_id,
            "files": removal.files,
            "entities_deleted": removal.entities_deleted,
            "relationships_deleted": removal.relationships_deleted,
        }
    finally:
        clear_context()


@celery_app.task(
    name="src.workers.tasks.delete_project_task",
    bind=True,
    acks_late=True,
)
def delete_project_task(self, project_id: str) -> dict:
    """Celery task: delete a project with its graph, batches and staged rows."""
    bind_context(project_id=project_id, task_id=self.request.id)
    logger.info("Celery worker: deleting project")
    try:
        asyncio.run(_with_orchestrator(lambda o: o.delete_project(uuid.UUID(project_id)), settings.db_url))
        return {"project_id": project_id, "deleted": True}
    finally:
        clear_context()
