"""
Read side of the graph store used by the query engine.

Defines the retrieval capability the engine and the agent tools depend on,
the result records those queries return, and the rendering of retrieved
records into the context block handed to the model. Every context line
carries a public id that the model can cite as [[id]].
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from src.services.query_trace import QueryTrace


# =============================================================================
# Result Records
# =============================================================================


@dataclass
class EntityHit:
    public_id: str
    name: str
    type: str
    description: str


@dataclass
class RelationshipHit:
    public_id: str
    source_name: str
    target_name: str
    description: str
    rank: float


@dataclass
class NeighbourHit:
    """A relationship seen from one of its endpoints."""

    relationship: RelationshipHit
    neighbour: EntityHit


@dataclass
class SourceHit:
    """A text unit backing an entity or relationship."""

    unit_public_id: str
    file_id: str
    file_name: str
    text: str
    description: str = ""


@dataclass
class DocumentInfo:
    file_id: str
    file_name: str
    metadata: str | None = None


# =============================================================================
# Capability
# =============================================================================


class QueryStore(ABC):
    """Retrieval operations scoped to one graph (project)."""

    @abstractmethod
    async def get_local_query_context(
        self,
        query: str,
        embedding: list[float],
        graph_id: uuid.UUID,
        trace: QueryTrace,
    ) -> str:
        """Context from the entities nearest to the query; "" if nothing matches."""
        pass

    @abstractmethod
    async def get_global_query_context(
        self,
        query: str,
        embedding: list[float],
        graph_id: uuid.UUID,
        trace: QueryTrace,
    ) -> str:
        """Whole-graph context (top relationships, hubs, type counts); "" for an empty graph."""
        pass

    @abstractmethod
    async def search_entities(
        self, graph_id: uuid.UUID, embedding: list[float], limit: int
    ) -> list[EntityHit]:
        pass

    @abstractmethod
    async def search_entities_by_type(
        self, graph_id: uuid.UUID, entity_type: str, embedding: list[float], limit: int
    ) -> list[EntityHit]:
        pass

    @abstractmethod
    async def get_entity_neighbours(
        self, graph_id: uuid.UUID, entity_public_id: str, limit: int
    ) -> list[NeighbourHit]:
        pass

    @abstractmethod
    async def get_entity_sources(
        self, graph_id: uuid.UUID, entity_public_id: str, limit: int
    ) -> list[SourceHit]:
        pass

    @abstractmethod
    async def get_relationship_sources(
        self, graph_id: uuid.UUID, relationship_public_id: str, limit: int
    ) -> list[SourceHit]:
        pass

    @abstractmethod
    async def get_entity_types(self, graph_id: uuid.UUID) -> list[tuple[str, int]]:
        pass

    @abstractmethod
    async def graph_exists(self, graph_id: uuid.UUID) -> bool:
        """Whether the project owning the graph exists."""
        pass


# =============================================================================
# Context Rendering
# =============================================================================


def _single_line(text: str) -> str:
    return " ".join(text.split())


def render_entity(entity: EntityHit) -> str:
    return f"{entity.name},{entity.public_id}: {_single_line(entity.description)}"


def render_relationship(rel: RelationshipHit) -> str:
    return f"{rel.source_name} -> {rel.target_name},{rel.public_id}: {_single_line(rel.description)}"


def render_source(source: SourceHit) -> str:
    return f"{source.file_name},{source.unit_public_id}: {_single_line(source.text)}"


def render_document(doc: DocumentInfo) -> str:
    line = f"{doc.file_name}"
    if doc.metadata:
        line += f": {_single_line(doc.metadata)}"
    return line


def render_local_context(
    entities: list[EntityHit],
    relationships: list[RelationshipHit],
    connecting: list[EntityHit],
    sources: list[SourceHit],
    documents: list[DocumentInfo],
) -> str:
    """Assemble the local-mode context block; empty sections are left out."""
    sections = [
        ("Relevant Entities:", [render_entity(e) for e in entities]),
        ("Connecting Relationships:", [render_relationship(r) for r in relationships]),
        ("Connecting Entities:", [render_entity(e) for e in connecting]),
        ("Additional Sources:", [render_source(s) for s in sources]),
        ("Document Metadata:", [render_document(d) for d in documents if d.metadata]),
    ]
    return "\n\n".join(
        title + "\n" + "\n".join(lines) for title, lines in sections if lines
    )


def render_global_context(
    relationships: list[RelationshipHit],
    hubs: list[tuple[EntityHit, int]],
    type_counts: list[tuple[str, int]],
    sources: list[SourceHit],
) -> str:
    """Assemble the global-mode context block; empty sections are left out."""
    sections = [
        ("Entity Types:", [f"{t}: {count}" for t, count in type_counts]),
        ("Central Entities:", [f"{render_entity(e)} ({degree} relationships)" for e, degree in hubs]),
        ("Strongest Relationships:", [render_relationship(r) for r in relationships]),
        ("Additional Sources:", [render_source(s) for s in sources]),
    ]
    return "\n\n".join(
        title + "\n" + "\n".join(lines) for title, lines in sections if lines
    )
