"""
In-memory merge engine for extracted graph fragments.

Entities merge on their (normalised name, type) key; relationships merge on
the unordered pair of their endpoint keys. Sources are the only state that
is accumulated, and every derived value (display name, description, rank,
direction) is computed from the sorted source set. That makes a merge
commutative: the merged result does not depend on the order in which units
finish extraction.

Relationship rank policy:
    rank = arithmetic mean of the strengths of all sources
"""

import re
from dataclasses import dataclass, field
from typing import Any

from src.core.config import settings

EntityKey = tuple[str, str]
RelationshipKey = tuple[EntityKey, EntityKey]

WHITESPACE = re.compile(r"\s+")
TRAILING_PUNCTUATION = ".,;:"


# =============================================================================
# Normalisation
# =============================================================================


def normalize_name(name: str) -> str:
    """Trim, collapse whitespace and strip trailing punctuation."""
    return WHITESPACE.sub(" ", name).strip().rstrip(TRAILING_PUNCTUATION).strip()


def normalize_type(entity_type: str) -> str:
    return WHITESPACE.sub("_", entity_type.strip()).upper()


def entity_key(name: str, entity_type: str, case_sensitive: bool | None = None) -> EntityKey:
    """Merge key of an entity."""
    if case_sensitive is None:
        case_sensitive = settings.merge_case_sensitive
    normalized = normalize_name(name)
    if not case_sensitive:
        normalized = normalized.casefold()
    return normalized, normalize_type(entity_type)


def relationship_key(source: EntityKey, target: EntityKey) -> RelationshipKey:
    """Unordered endpoint pair: A->B and B->A share a key."""
    return (source, target) if source <= target else (target, source)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True, order=True)
class EntitySourceData:
    """One unit's account of an entity."""

    unit_id: str
    description: str


@dataclass(frozen=True, order=True)
class RelationshipSourceData:
    """One unit's account of a relationship, with its extracted strength."""

    unit_id: str
    description: str
    strength: float
    # Direction as stated in this unit
    source_name: str = ""
    target_name: str = ""


@dataclass
class EntityData:
    """An entity with every source it was extracted from."""

    name: str
    type: str
    sources: list[EntitySourceData] = field(default_factory=list)

    @property
    def key(self) -> EntityKey:
        return entity_key(self.name, self.type)

    @property
    def description(self) -> str:
        """Source descriptions joined in source order, duplicates dropped."""
        return join_descriptions(s.description for s in self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "sources": [{"unit_id": s.unit_id, "description": s.description} for s in self.sources],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityData":
        return cls(
            name=data["name"],
            type=data["type"],
            sources=[EntitySourceData(**s) for s in data.get("sources", [])],
        )


@dataclass
class RelationshipData:
    """A relationship between two entity keys with every source it came from."""

    source: EntityKey
    target: EntityKey
    sources: list[RelationshipSourceData] = field(default_factory=list)

    @property
    def key(self) -> RelationshipKey:
        return relationship_key(self.source, self.target)

    @property
    def rank(self) -> float:
        return mean_rank(s.strength for s in self.sources)

    @property
    def description(self) -> str:
        return join_descriptions(s.description for s in self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": list(self.source),
            "target": list(self.target),
            "sources": [
                {
                    "unit_id": s.unit_id,
                    "description": s.description,
                    "strength": s.strength,
                    "source_name": s.source_name,
                    "target_name": s.target_name,
                }
                for s in self.sources
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelationshipData":
        return cls(
            source=tuple(data["source"]),
            target=tuple(data["target"]),
            sources=[RelationshipSourceData(**s) for s in data.get("sources", [])],
        )


def mean_rank(strengths) -> float:
    values = list(strengths)
    if not values:
        return 0.0
    return sum(values) / len(values)


def join_descriptions(descriptions) -> str:
    seen: dict[str, None] = {}
    for description in descriptions:
        description = description.strip()
        if description:
            seen.setdefault(description, None)
    return "\n".join(seen)


# =============================================================================
# Merge
# =============================================================================


def _merge_entity(a: EntityData, b: EntityData) -> EntityData:
    sources = sorted(set(a.sources) | set(b.sources))
    # Display name: the lexicographically smallest spelling seen
    name = min(normalize_name(a.name), normalize_name(b.name))
    return EntityData(name=name, type=normalize_type(a.type), sources=sources)


def _merge_relationship(a: RelationshipData, b: RelationshipData) -> RelationshipData:
    sources = sorted(set(a.sources) | set(b.sources))
    # Keep the direction of whichever side owns the first source
    first = a if (a.sources and (not b.sources or min(a.sources) <= min(b.sources))) else b
    return RelationshipData(source=first.source, target=first.target, sources=sources)


def merge(
    existing_entities: list[EntityData],
    new_entities: list[EntityData],
    existing_relationships: list[RelationshipData],
    new_relationships: list[RelationshipData],
) -> tuple[list[EntityData], list[RelationshipData]]:
    """
    Merge new graph fragments into existing ones.

    Returns entities sorted by key and relationships sorted by key, so the
    result is identical for any arrival order of the same inputs.
    """
    entities: dict[EntityKey, EntityData] = {}
    for entity in [*existing_entities, *new_entities]:
        key = entity.key
        current = entities.get(key)
        if current is None:
            entities[key] = EntityData(
                name=normalize_name(entity.name),
                type=normalize_type(entity.type),
                sources=sorted(set(entity.sources)),
            )
        else:
            entities[key] = _merge_entity(current, entity)

    relationships: dict[RelationshipKey, RelationshipData] = {}
    for rel in [*existing_relationships, *new_relationships]:
        key = rel.key
        current = relationships.get(key)
        if current is None:
            relationships[key] = RelationshipData(
                source=rel.source,
                target=rel.target,
                sources=sorted(set(rel.sources)),
            )
        else:
            relationships[key] = _merge_relationship(current, rel)

    return (
        [entities[k] for k in sorted(entities)],
        [relationships[k] for k in sorted(relationships)],
    )


class GraphAccumulator:
    """
    Mutable merge target for one processing scope (a file or a batch).

    Not thread-safe on its own; concurrent producers must hold a lock
    around `add`.
    """

    def __init__(self) -> None:
        self.entities: list[EntityData] = []
        self.relationships: list[RelationshipData] = []

    def add(self, entities: list[EntityData], relationships: list[RelationshipData]) -> None:
        self.entities, self.relationships = merge(
            self.entities, entities, self.relationships, relationships
        )

    def absorb(self, other: "GraphAccumulator") -> None:
        self.add(other.entities, other.relationships)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.relationships
