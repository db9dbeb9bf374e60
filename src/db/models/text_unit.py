"""
TextUnit model: immutable chunks of source text with citation ids.

Units are created once while a batch is indexed and never mutated. Their
public id is what generated answers cite inside [[...]] markers, and the
character offsets map a citation back to the exact span of the file text.
"""

import uuid

from sqlalchemy import ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base, CreatedAtMixin, PublicIdMixin, UUIDMixin


class TextUnit(UUIDMixin, PublicIdMixin, CreatedAtMixin, Base):
    """
    A token-bounded chunk of one project file.

    Attributes:
        public_id: Citation identifier (generated by the splitter)
        project_id: Owning project
        project_file_id: Source file; units are deleted with their file
        unit_index: Position within the file
        start_offset: Character start in the extracted file text
        end_offset: Character end (exclusive)
        text: Unit content
        token_count: Tokens under the configured encoder
    """

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    project_file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("project_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    unit_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<TextUnit(public_id={self.public_id}, file={self.project_file_id}, index={self.unit_index})>"


Index("ix_text_units_file_order", TextUnit.project_file_id, TextUnit.unit_index)
