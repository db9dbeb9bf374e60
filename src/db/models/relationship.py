"""
Relationship model for knowledge graph edges.

Relationships are stored directed (source -> target) as extracted, but for
deduplication A->B and B->A between the same two entities are the same
relationship.

Rank policy:
    Each RelationshipSource keeps the strength it was extracted with, and
    Relationship.rank is the arithmetic mean over all of its sources. Merges
    only union source lists, so the resulting rank does not depend on the
    order in which sources arrive.
"""

import uuid
from typing import TYPE_CHECKING

from pgvector.sqlalchemy import Vector
from sqlalchemy import Float, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.config import settings
from src.db.base import Base, PublicIdMixin, TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from src.db.models.entity import Entity


class Relationship(UUIDMixin, PublicIdMixin, TimestampMixin, Base):
    """
    A described edge between two entities of the same project.

    Attributes:
        source_id: Entity the edge starts at
        target_id: Entity the edge points to
        description: Condensed description built from all sources
        rank: Mean extraction strength of the sources
        embedding: Vector of "source -> target: description"
    """

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    source_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    target_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    rank: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    source: Mapped["Entity"] = relationship("Entity", foreign_keys=[source_id], lazy="raise")
    target: Mapped["Entity"] = relationship("Entity", foreign_keys=[target_id], lazy="raise")

    sources: Mapped[list["RelationshipSource"]] = relationship(
        "RelationshipSource",
        back_populates="relationship_",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Relationship(source={self.source_id}, target={self.target_id}, rank={self.rank:.2f})>"


class RelationshipSource(UUIDMixin, TimestampMixin, Base):
    """
    Provenance of a relationship: one text unit that states it.

    Attributes:
        relationship_id: The relationship described
        text_unit_id: Unit the description was extracted from
        description: What this unit says about the connection
        rank: Strength the model assigned in this unit
    """

    relationship_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("relationships.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    text_unit_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("text_units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    rank: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    relationship_: Mapped["Relationship"] = relationship("Relationship", back_populates="sources")

    def __repr__(self) -> str:
        return f"<RelationshipSource(relationship={self.relationship_id}, unit={self.text_unit_id})>"


Index("ix_relationships_endpoints", Relationship.project_id, Relationship.source_id, Relationship.target_id)
