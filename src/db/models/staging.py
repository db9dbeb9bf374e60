"""
Staging model: durable buffer between preprocessing and indexing.

Rows hold the serialized units, entities and relationships a batch produced
during the AI-heavy preprocessing stage. If a worker dies during indexing,
the batch is reset to `preprocessed` and indexing replays these rows instead
of calling the model again.

The surrogate id is a monotonically increasing identity column, so reading
rows ordered by id reproduces insertion order.
"""

import uuid

from sqlalchemy import BigInteger, Enum, Identity, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base, CreatedAtMixin
from src.db.enums import StagedDataType


class StagedRecord(CreatedAtMixin, Base):
    """
    One staged payload of a batch.

    Attributes:
        id: Monotonic surrogate key (defines replay order)
        correlation_id: Ingestion run
        batch_id: Batch within the run
        project_id: Owning project (for project-wide deletes)
        data_type: unit, entity or relationship
        data: JSON payload
    """

    __tablename__ = "extraction_staging"

    id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
        sort_order=-100,
    )

    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_id: Mapped[int] = mapped_column(Integer, nullable=False)

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    data_type: Mapped[StagedDataType] = mapped_column(
        Enum(
            StagedDataType,
            name="stageddatatype",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    data: Mapped[dict] = mapped_column(JSONB, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<StagedRecord(id={self.id}, correlation={self.correlation_id}, "
            f"batch={self.batch_id}, type={self.data_type.value})>"
        )


Index(
    "ix_extraction_staging_lookup",
    StagedRecord.correlation_id,
    StagedRecord.batch_id,
    StagedRecord.data_type,
    StagedRecord.id,
)
Index("ix_extraction_staging_created_at", StagedRecord.created_at)
