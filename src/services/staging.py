"""
Staging store for extracted-but-not-yet-indexed graph data.

Preprocessing writes one row per unit, entity and relationship of a batch;
indexing replays them in insertion order. Rows are deleted when indexing
finishes (successfully or not), when the batch is restarted, and by the
periodic retention cleanup.
"""

import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.db.base import utcnow
from src.db.enums import StagedDataType
from src.db.models import StagedRecord

logger = get_logger(__name__)


class StagingStore:
    """
    Staged record access for one database session.

    Usage:
        store = StagingStore(db)
        await store.insert_many(correlation_id, batch_id, project_id, StagedDataType.UNIT, payloads)
        units = await store.list(correlation_id, batch_id, StagedDataType.UNIT)
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def insert(
        self,
        correlation_id: str,
        batch_id: int,
        project_id: uuid.UUID,
        data_type: StagedDataType,
        payload: dict[str, Any],
    ) -> None:
        """Stage a single payload."""
        await self.insert_many(correlation_id, batch_id, project_id, data_type, [payload])

    async def insert_many(
        self,
        correlation_id: str,
        batch_id: int,
        project_id: uuid.UUID,
        data_type: StagedDataType,
        payloads: list[dict[str, Any]],
    ) -> int:
        """Stage payloads keeping their order (identity ids are assigned in row order)."""
        if not payloads:
            return 0
        await self.db.execute(
            insert(StagedRecord),
            [
                {
                    "correlation_id": correlation_id,
                    "batch_id": batch_id,
                    "project_id": project_id,
                    "data_type": data_type,
                    "data": payload,
                }
                for payload in payloads
            ],
        )
        return len(payloads)

    async def list(
        self,
        correlation_id: str,
        batch_id: int,
        data_type: StagedDataType,
    ) -> list[dict[str, Any]]:
        """Staged payloads of one kind, in insertion order."""
        result = await self.db.execute(
            select(StagedRecord.data)
            .where(
                StagedRecord.correlation_id == correlation_id,
                StagedRecord.batch_id == batch_id,
                StagedRecord.data_type == data_type,
            )
            .order_by(StagedRecord.id)
        )
        return list(result.scalars().all())

    async def delete(self, correlation_id: str, batch_id: int) -> int:
        """Remove everything staged for a batch."""
        result = await self.db.execute(
            delete(StagedRecord).where(
                StagedRecord.correlation_id == correlation_id,
                StagedRecord.batch_id == batch_id,
            )
        )
        return result.rowcount or 0

    async def delete_by_project(self, project_id: uuid.UUID) -> int:
        """Remove everything staged for a project."""
        result = await self.db.execute(
            delete(StagedRecord).where(StagedRecord.project_id == project_id)
        )
        return result.rowcount or 0

    async def cleanup(self, max_age: timedelta) -> int:
        """Delete staged rows older than max_age."""
        cutoff = utcnow() - max_age
        result = await self.db.execute(
            delete(StagedRecord).where(StagedRecord.created_at < cutoff)
        )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Staging cleanup", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
