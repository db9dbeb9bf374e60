"""
Persistence seam of the batch orchestrator.

The orchestrator reads and writes projects, files and batches through a
PipelineStore opened per unit of work. The store also carries the staging,
graph and process-time stores bound to the same transaction, so a stage
commits everything it wrote at once.

SqlPipelineStore is the SQLAlchemy implementation; `sql_store_factory`
opens one on a fresh session per unit of work.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.base import utcnow
from src.db.enums import BatchStatus
from src.db.models import Batch, Project, ProjectFile
from src.services.graph_store import GraphStore
from src.services.process_time import ProcessTimeService
from src.services.staging import StagingStore


class PipelineStore(ABC):
    """Project, file and batch access for one unit of work."""

    staging: StagingStore
    graph: GraphStore
    process_time: ProcessTimeService

    # === Projects and files ===
    @abstractmethod
    async def get_project(self, project_id: uuid.UUID) -> Project | None:
        pass

    @abstractmethod
    async def get_files(self, file_ids: list[uuid.UUID]) -> list[ProjectFile]:
        pass

    @abstractmethod
    async def set_token_count(self, file_id: uuid.UUID, tokens: int) -> None:
        pass

    @abstractmethod
    async def deleted_files(self, project_id: uuid.UUID) -> list[ProjectFile]:
        """Soft-deleted files of a project still holding rows."""
        pass

    @abstractmethod
    async def remove_files(self, file_ids: list[uuid.UUID]) -> None:
        pass

    @abstractmethod
    async def delete_project(self, project_id: uuid.UUID) -> bool:
        """Delete the project row; files, graph and batches cascade."""
        pass

    # === Batches ===
    @abstractmethod
    def add_batch(self, batch: Batch) -> None:
        pass

    @abstractmethod
    async def claim_batch(
        self,
        correlation_id: str,
        batch_id: int,
        expected: BatchStatus,
        target: BatchStatus,
    ) -> Batch | None:
        """Move the batch from expected to target in one statement; None if it was not in expected."""
        pass

    @abstractmethod
    async def get_batch(self, correlation_id: str, batch_id: int) -> Batch | None:
        pass

    @abstractmethod
    async def list_batches(self, correlation_id: str) -> list[Batch]:
        """Batches of one run, ordered by batch id."""
        pass

    @abstractmethod
    async def latest_correlation_id(self, project_id: uuid.UUID) -> str | None:
        pass

    @abstractmethod
    async def processing_batches(self) -> list[Batch]:
        """Batches in a processing state, locked against concurrent sweeps."""
        pass

    @abstractmethod
    async def unfinished_batches(self, project_id: uuid.UUID) -> list[Batch]:
        pass

    # === Transaction ===
    @abstractmethod
    async def flush(self) -> None:
        pass

    @abstractmethod
    async def commit(self) -> None:
        pass

    @abstractmethod
    async def rollback(self) -> None:
        pass


StoreFactory = Callable[[], AbstractAsyncContextManager[PipelineStore]]


class SqlPipelineStore(PipelineStore):
    """PipelineStore on one SQLAlchemy session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.staging = StagingStore(db)
        self.graph = GraphStore(db)
        self.process_time = ProcessTimeService(db)

    async def get_project(self, project_id: uuid.UUID) -> Project | None:
        return await self.db.get(Project, project_id)

    async def get_files(self, file_ids: list[uuid.UUID]) -> list[ProjectFile]:
        if not file_ids:
            return []
        result = await self.db.execute(select(ProjectFile).where(ProjectFile.id.in_(file_ids)))
        return list(result.scalars().all())

    async def set_token_count(self, file_id: uuid.UUID, tokens: int) -> None:
        await self.db.execute(update(ProjectFile).where(ProjectFile.id == file_id).values(token_count=tokens))

    async def deleted_files(self, project_id: uuid.UUID) -> list[ProjectFile]:
        result = await self.db.execute(
            select(ProjectFile)
            .where(ProjectFile.project_id == project_id, ProjectFile.deleted.is_(True))
            .order_by(ProjectFile.id)
        )
        return list(result.scalars().all())

    async def remove_files(self, file_ids: list[uuid.UUID]) -> None:
        if not file_ids:
            return
        await self.db.execute(
            delete(ProjectFile)
            .where(ProjectFile.id.in_(file_ids))
            .execution_options(synchronize_session=False)
        )

    async def delete_project(self, project_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            delete(Project).where(Project.id == project_id).execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def add_batch(self, batch: Batch) -> None:
        self.db.add(batch)

    async def claim_batch(
        self,
        correlation_id: str,
        batch_id: int,
        expected: BatchStatus,
        target: BatchStatus,
    ) -> Batch | None:
        result = await self.db.execute(
            update(Batch)
            .where(
                Batch.correlation_id == correlation_id,
                Batch.batch_id == batch_id,
                Batch.status == expected,
            )
            .values(status=target, started_at=utcnow(), error_message=None)
            .returning(Batch)
        )
        return result.scalar_one_or_none()

    async def get_batch(self, correlation_id: str, batch_id: int) -> Batch | None:
        result = await self.db.execute(
            select(Batch).where(Batch.correlation_id == correlation_id, Batch.batch_id == batch_id)
        )
        return result.scalar_one_or_none()

    async def list_batches(self, correlation_id: str) -> list[Batch]:
        result = await self.db.execute(
            select(Batch).where(Batch.correlation_id == correlation_id).order_by(Batch.batch_id)
        )
        return list(result.scalars().all())

    async def latest_correlation_id(self, project_id: uuid.UUID) -> str | None:
        result = await self.db.execute(
            select(Batch.correlation_id)
            .where(Batch.project_id == project_id)
            .order_by(Batch.created_at.desc(), Batch.correlation_id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def processing_batches(self) -> list[Batch]:
        result = await self.db.execute(
            select(Batch)
            .where(Batch.status.in_([BatchStatus.PREPROCESSING, BatchStatus.INDEXING]))
            .order_by(Batch.started_at)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def unfinished_batches(self, project_id: uuid.UUID) -> list[Batch]:
        result = await self.db.execute(
            select(Batch)
            .where(
                Batch.project_id == project_id,
                Batch.status.not_in([BatchStatus.COMPLETED, BatchStatus.FAILED]),
            )
            .order_by(Batch.created_at, Batch.batch_id)
        )
        return list(result.scalars().all())

    async def flush(self) -> None:
        await self.db.flush()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()


def sql_store_factory(session_factory: async_sessionmaker[AsyncSession]) -> StoreFactory:
    """Factory opening a SqlPipelineStore on a new session per unit of work."""

    @asynccontextmanager
    async def open_sql_store() -> AsyncIterator[SqlPipelineStore]:
        async with session_factory() as db:
            yield SqlPipelineStore(db)

    return open_sql_store
