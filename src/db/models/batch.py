"""
Batch model for tracking ingestion runs through the pipeline.

A correlation id names one ingestion run; the run is split into batches,
each identified by its position (batch_id) inside the run.

Key features:
- Status state machine (see BatchStatus)
- Timestamps for staleness detection and duration statistics
- Estimated duration for progress reporting
- Error message preserved on failure and on stale resets
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.exceptions import BatchStateError
from src.db.base import Base, TimestampMixin, UUIDMixin, utcnow
from src.db.enums import BatchStatus

if TYPE_CHECKING:
    from src.db.models.project import Project


class Batch(UUIDMixin, TimestampMixin, Base):
    """
    A subset of a project's files processed together.

    Attributes:
        correlation_id: Ingestion run this batch belongs to
        batch_id: Position within the run (0-indexed)
        total_batches: Number of batches in the run
        project_id: Owning project
        status: Pipeline state
        file_ids: Ids of the ProjectFiles in this batch
        started_at: Entry time of the current processing state
        completed_at: When the batch reached a terminal state
        error_message: Failure reason or stale-reset note
        estimated_duration_ms: Predicted processing time
        actual_duration_ms: Measured processing time once completed

    Constraints:
        - (correlation_id, batch_id) must be unique
    """

    __tablename__ = "batches"

    correlation_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Ingestion run identifier",
    )

    batch_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Position within the run",
    )

    total_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[BatchStatus] = mapped_column(
        Enum(
            BatchStatus,
            name="batchstatus",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=BatchStatus.PENDING,
        index=True,
    )

    file_ids: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        comment="ProjectFile ids (as strings) processed by this batch",
    )

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    estimated_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    project: Mapped["Project"] = relationship("Project", back_populates="batches")

    __table_args__ = (
        UniqueConstraint("correlation_id", "batch_id", name="uq_batches_correlation_batch"),
    )

    def __repr__(self) -> str:
        return (
            f"<Batch(correlation={self.correlation_id}, batch={self.batch_id}, "
            f"status={self.status.value})>"
        )

    # === Status Management ===
    def transition(self, target: BatchStatus, now: datetime | None = None) -> None:
        """
        Move the batch forward, maintaining timestamps.

        started_at is set on entering preprocessing/indexing; completed_at on
        entering a terminal state.
        """
        if not self.status.can_transition_to(target):
            raise BatchStateError(self.status.value, target.value)
        now = now or utcnow()
        self.status = target
        if target.is_processing:
            self.started_at = now
        if target.is_terminal:
            self.completed_at = now

    def fail(self, error: str, now: datetime | None = None) -> None:
        """Mark the batch failed with the error preserved."""
        self.transition(BatchStatus.FAILED, now)
        self.error_message = error

    def reset_stale(self, reason: str) -> BatchStatus:
        """Fall back to the last durable checkpoint."""
        target = self.status.stale_reset_target
        if target is None:
            raise BatchStateError(self.status.value, "stale reset")
        self.status = target
        self.started_at = None
        self.error_message = reason
        return target

    @property
    def is_terminal(self) -> bool:
        """Check if the batch is in a terminal state."""
        return self.status.is_terminal

    def is_stale(self, now: datetime, threshold_seconds: float) -> bool:
        """A processing batch whose current stage started longer ago than threshold."""
        if not self.status.is_processing or self.started_at is None:
            return False
        return (now - self.started_at).total_seconds() > threshold_seconds


Index("ix_batches_status_started", Batch.status, Batch.started_at)
Index("ix_batches_project_created", Batch.project_id, Batch.created_at.desc())
