"""
Entity model for knowledge graph nodes.

Entities are named concepts extracted from text units. Identity inside a
project is the (name, type) pair; every extraction that mentions the entity
adds an EntitySource carrying the per-unit description.

Key features:
- Unique (project_id, name, type) for idempotent upserts
- Trigram index on name for fuzzy duplicate search (pg_trgm)
- pgvector embedding for nearest-neighbour retrieval
- Provenance through EntitySource rows
"""

import uuid
from typing import TYPE_CHECKING

from pgvector.sqlalchemy import Vector
from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.config import settings
from src.db.base import Base, PublicIdMixin, TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from src.db.models.text_unit import TextUnit


class Entity(UUIDMixin, PublicIdMixin, TimestampMixin, Base):
    """
    A node in the knowledge graph.

    Attributes:
        id: UUID7 internal id
        public_id: Stable external identifier
        project_id: Owning project (entities never span projects)
        name: Normalised display name
        type: Entity type tag (ORGANIZATION, PERSON, ...)
        description: Condensed description built from all sources
        embedding: Vector of "name: description"

    Lifecycle:
        Created when a staged entity is first indexed, updated when more
        sources arrive or duplicates are merged in, deleted once it has no
        sources left.
    """

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(512), nullable=False)

    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    sources: Mapped[list["EntitySource"]] = relationship(
        "EntitySource",
        back_populates="entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    __table_args__ = (
        Index("uq_entities_project_name_type", "project_id", "name", "type", unique=True),
        Index(
            "ix_entities_name_trgm",
            "name",
            postgresql_using="gin",
            postgresql_ops={"name": "gin_trgm_ops"},
        ),
    )

    def __repr__(self) -> str:
        return f"<Entity(name={self.name!r}, type={self.type})>"


class EntitySource(UUIDMixin, TimestampMixin, Base):
    """
    Provenance of an entity: one text unit that mentions it.

    Attributes:
        entity_id: The entity described
        text_unit_id: Unit the description was extracted from
        description: What this unit says about the entity
        embedding: Vector of the description (used for source ranking)
    """

    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
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

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    entity: Mapped["Entity"] = relationship("Entity", back_populates="sources")
    text_unit: Mapped["TextUnit"] = relationship("TextUnit", lazy="raise")

    def __repr__(self) -> str:
        return f"<EntitySource(entity={self.entity_id}, unit={self.text_unit_id})>"
