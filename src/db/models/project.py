"""
Project and ProjectFile models.

A project owns a set of uploaded files and one knowledge graph built from
them. Files are soft-deleted first so that audit and citation lookups keep
working until the file is removed for good.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.config import settings
from src.db.base import Base, TimestampMixin, UUIDMixin, utcnow
from src.db.enums import FileType, ProjectState

if TYPE_CHECKING:
    from src.db.models.batch import Batch


class Project(UUIDMixin, TimestampMixin, Base):
    """
    A container for files and the graph extracted from them.

    Attributes:
        id: UUID7 primary key (also used as the graph id by the query engine)
        name: Display name
        state: Graph lifecycle state (create, update, ready)
        entity_types: Optional custom entity types for extraction
        files: Uploaded files, including soft-deleted ones
    """

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Display name",
    )

    state: Mapped[ProjectState] = mapped_column(
        Enum(
            ProjectState,
            name="projectstate",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=ProjectState.CREATE,
        comment="Graph lifecycle state",
    )

    entity_types: Mapped[list | None] = mapped_column(
        JSONB,
        nullable=True,
        comment="Custom entity types used as extraction hints",
    )

    files: Mapped[list["ProjectFile"]] = relationship(
        "ProjectFile",
        back_populates="project",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    batches: Mapped[list["Batch"]] = relationship(
        "Batch",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name={self.name!r}, state={self.state.value})>"

    @property
    def active_files(self) -> list["ProjectFile"]:
        """Files that take part in processing."""
        return [f for f in self.files if not f.deleted]


class ProjectFile(UUIDMixin, TimestampMixin, Base):
    """
    A file uploaded into a project.

    Attributes:
        project_id: Owning project
        name: Original file name (shown to the extraction model)
        storage_key: Object-storage key used by the text extractors
        file_type: Selects the unit builder (text, csv, image, file)
        mime_type: Content type reported on upload
        size_bytes: Size of the stored file reported on upload (0 if unknown)
        token_count: Tokens of the extracted text, set after preprocessing
        file_metadata: Free-text metadata appended to extraction prompts
        deleted: Soft-delete flag
    """

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(512), nullable=False)

    storage_key: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        comment="Key in object storage",
    )

    file_type: Mapped[FileType] = mapped_column(
        Enum(
            FileType,
            name="filetype",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=FileType.TEXT,
    )

    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    size_bytes: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Size of the stored file in bytes",
    )

    token_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Token count of the extracted text",
    )

    file_metadata: Mapped[str | None] = mapped_column(
        "metadata",
        Text,
        nullable=True,
        comment="Document metadata (type, date, summary)",
    )

    deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Soft-delete flag",
    )

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    project: Mapped["Project"] = relationship("Project", back_populates="files")

    def __repr__(self) -> str:
        return f"<ProjectFile(id={self.id}, name={self.name!r}, deleted={self.deleted})>"

    def soft_delete(self) -> None:
        """Exclude the file from processing while keeping it for audit."""
        self.deleted = True
        self.deleted_at = utcnow()

    @property
    def estimated_tokens(self) -> int:
        """
        Token count for partitioning and estimates.

        The measured count once the file was preprocessed, otherwise a guess
        from the stored size; 0 when neither is known.
        """
        if self.token_count:
            return self.token_count
        if self.size_bytes:
            return max(1, self.size_bytes // settings.bytes_per_token)
        return 0


Index("ix_project_files_project_active", ProjectFile.project_id, ProjectFile.deleted)
