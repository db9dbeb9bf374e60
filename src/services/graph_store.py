"""
Graph store: persisted entities, relationships and text units of a project.

This module provides the SQL implementation of every graph operation the
pipeline and the query engine need.

Features:
- Indexing writes: text units, get-or-create entities and relationships,
  provenance sources, mean-strength rank maintenance
- Dedupe primitives: pg_trgm similarity pairs, candidate listing, renames,
  source transfer, orphan cleanup
- File removal: text units and sources of deleted files
- Description / embedding maintenance helpers
- Retrieval: pgvector nearest entities, local and global context, agent tools

All writes go through the caller's session; the caller owns the transaction
and must hold the project lock while writing.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import aggregate_order_by, array_agg
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from src.core.config import settings
from src.core.exceptions import RetrievalError
from src.core.logging import get_logger
from src.db.models import (
    Entity,
    EntitySource,
    Project,
    ProjectFile,
    Relationship,
    RelationshipSource,
    TextUnit,
)
from src.services.dedupe import DedupeCandidate, DedupeStore
from src.services.merge import EntityData, EntityKey, RelationshipData
from src.services.query_store import (
    DocumentInfo,
    EntityHit,
    NeighbourHit,
    QueryStore,
    RelationshipHit,
    SourceHit,
    render_global_context,
    render_local_context,
)
from src.services.query_trace import QueryTrace
from src.services.units import UnitData

logger = get_logger(__name__)


@dataclass
class DescriptionInput:
    """Sources of one entity or relationship, for description generation."""

    id: uuid.UUID
    label: str
    source_descriptions: list[str]


@dataclass
class WriteResult:
    """Ids of rows created or extended by an indexing write."""

    entity_ids: dict[EntityKey, uuid.UUID]
    touched_entity_ids: set[uuid.UUID]
    touched_relationship_ids: set[uuid.UUID]


class GraphStore(DedupeStore, QueryStore):
    """
    SQL graph store bound to one session.

    Usage:
        async with get_db_context() as db:
            store = GraphStore(db)
            unit_ids = await store.save_units(project_id, file_id, units)
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._entity_cache: dict[tuple[uuid.UUID, str, str], Entity] = {}

    # =========================================================================
    # Indexing writes
    # =========================================================================

    async def save_units(
        self,
        project_id: uuid.UUID,
        project_file_id: uuid.UUID,
        units: list[UnitData],
    ) -> dict[str, uuid.UUID]:
        """Insert text units; returns public id -> row id."""
        rows = [
            TextUnit(
                public_id=unit.public_id,
                project_id=project_id,
                project_file_id=project_file_id,
                unit_index=unit.unit_index,
                start_offset=unit.start_offset,
                end_offset=unit.end_offset,
                text=unit.text,
                token_count=unit.token_count,
            )
            for unit in units
        ]
        self.db.add_all(rows)
        await self.db.flush()
        return {row.public_id: row.id for row in rows}

    async def _get_or_create_entity(self, project_id: uuid.UUID, name: str, entity_type: str) -> tuple[Entity, bool]:
        cache_key = (project_id, name, entity_type)
        if cache_key in self._entity_cache:
            return self._entity_cache[cache_key], False

        result = await self.db.execute(
            select(Entity).where(
                Entity.project_id == project_id,
                Entity.name == name,
                Entity.type == entity_type,
            )
        )
        entity = result.scalar_one_or_none()
        created = entity is None
        if created:
            entity = Entity(project_id=project_id, name=name, type=entity_type, description="")
            self.db.add(entity)
            await self.db.flush()

        self._entity_cache[cache_key] = entity
        return entity, created

    async def upsert_entities(
        self,
        project_id: uuid.UUID,
        entities: list[EntityData],
        unit_ids: dict[str, uuid.UUID],
    ) -> WriteResult:
        """Create missing entities and attach one source per extracted mention."""
        result = WriteResult(entity_ids={}, touched_entity_ids=set(), touched_relationship_ids=set())
        for data in entities:
            entity, _ = await self._get_or_create_entity(project_id, data.name, data.type)
            result.entity_ids[data.key] = entity.id
            for source in data.sources:
                text_unit_id = unit_ids.get(source.unit_id)
                if text_unit_id is None:
                    logger.warning("Entity source references unknown unit", unit_id=source.unit_id)
                    continue
                self.db.add(
                    EntitySource(entity_id=entity.id, text_unit_id=text_unit_id, description=source.description)
                )
                result.touched_entity_ids.add(entity.id)
        await self.db.flush()
        return result

    async def _find_relationship(
        self, project_id: uuid.UUID, a: uuid.UUID, b: uuid.UUID
    ) -> Relationship | None:
        result = await self.db.execute(
            select(Relationship)
            .where(
                Relationship.project_id == project_id,
                or_(
                    (Relationship.source_id == a) & (Relationship.target_id == b),
                    (Relationship.source_id == b) & (Relationship.target_id == a),
                ),
            )
            .order_by(Relationship.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert_relationships(
        self,
        project_id: uuid.UUID,
        relationships: list[RelationshipData],
        entity_ids: dict[EntityKey, uuid.UUID],
        unit_ids: dict[str, uuid.UUID],
    ) -> set[uuid.UUID]:
        """Create or extend relationships (matched on unordered endpoints) and refresh ranks."""
        touched: set[uuid.UUID] = set()
        for data in relationships:
            source_id = entity_ids.get(data.source)
            target_id = entity_ids.get(data.target)
            if source_id is None or target_id is None:
                logger.warning("Relationship endpoint not indexed", source=data.source, target=data.target)
                continue

            relationship = await self._find_relationship(project_id, source_id, target_id)
            if relationship is None:
                relationship = Relationship(
                    project_id=project_id,
                    source_id=source_id,
                    target_id=target_id,
                    description="",
                    rank=data.rank,
                )
                self.db.add(relationship)
                await self.db.flush()

            for source in data.sources:
                text_unit_id = unit_ids.get(source.unit_id)
                if text_unit_id is None:
                    logger.warning("Relationship source references unknown unit", unit_id=source.unit_id)
                    continue
                self.db.add(
                    RelationshipSource(
                        relationship_id=relationship.id,
                        text_unit_id=text_unit_id,
                        description=source.description,
                        rank=source.strength,
                    )
                )
                touched.add(relationship.id)

        await self.db.flush()
        await self.refresh_ranks(touched)
        return touched

    async def refresh_ranks(self, relationship_ids: Iterable[uuid.UUID]) -> None:
        """rank = mean strength of all sources."""
        ids = list(relationship_ids)
        if not ids:
            return
        mean_rank = (
            select(func.coalesce(func.avg(RelationshipSource.rank), 0.0))
            .where(RelationshipSource.relationship_id == Relationship.id)
            .scalar_subquery()
        )
        await self.db.execute(
            update(Relationship)
            .where(Relationship.id.in_(ids))
            .values(rank=mean_rank)
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Dedupe primitives
    # =========================================================================

    async def find_similar_entity_pairs(
        self, project_id: uuid.UUID, threshold: float
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        e1 = aliased(Entity)
        e2 = aliased(Entity)
        result = await self.db.execute(
            select(e1.id, e2.id)
            .join(
                e2,
                (e1.project_id == e2.project_id) & (e1.type == e2.type) & (e1.id < e2.id),
            )
            .where(
                e1.project_id == project_id,
                func.similarity(e1.name, e2.name) > threshold,
            )
            .order_by(e1.id, e2.id)
        )
        return [(a, b) for a, b in result.all()]

    async def dedupe_candidates(
        self, project_id: uuid.UUID, entity_ids: list[uuid.UUID]
    ) -> list[DedupeCandidate]:
        if not entity_ids:
            return []
        result = await self.db.execute(
            select(Entity.id, Entity.name, Entity.type, func.count(EntitySource.id))
            .outerjoin(EntitySource, EntitySource.entity_id == Entity.id)
            .where(Entity.project_id == project_id, Entity.id.in_(entity_ids))
            .group_by(Entity.id)
            .order_by(Entity.id)
        )
        return [
            DedupeCandidate(entity_id, name, entity_type, count)
            for entity_id, name, entity_type, count in result.all()
        ]

    async def rename_entity(self, project_id: uuid.UUID, entity_id: uuid.UUID, name: str) -> bool:
        taken = aliased(Entity)
        result = await self.db.execute(
            update(Entity)
            .where(
                Entity.id == entity_id,
                Entity.project_id == project_id,
                ~exists().where(
                    taken.project_id == project_id,
                    taken.type == Entity.type,
                    taken.name == name,
                    taken.id != entity_id,
                ),
            )
            .values(name=name)
            .execution_options(synchronize_session=False)
        )
        self._entity_cache = {k: v for k, v in self._entity_cache.items() if v.id != entity_id}
        return bool(result.rowcount)

    async def merge_entities(
        self, project_id: uuid.UUID, canonical_id: uuid.UUID, duplicate_ids: list[uuid.UUID]
    ) -> None:
        if not duplicate_ids:
            return
        await self.db.execute(
            update(EntitySource)
            .where(EntitySource.entity_id.in_(duplicate_ids))
            .values(entity_id=canonical_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Relationship)
            .where(Relationship.project_id == project_id, Relationship.source_id.in_(duplicate_ids))
            .values(source_id=canonical_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Relationship)
            .where(Relationship.project_id == project_id, Relationship.target_id.in_(duplicate_ids))
            .values(target_id=canonical_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(Entity)
            .where(Entity.id.in_(duplicate_ids))
            .execution_options(synchronize_session=False)
        )
        self._entity_cache = {k: v for k, v in self._entity_cache.items() if v.id not in duplicate_ids}

    async def find_duplicate_relationship_groups(self, project_id: uuid.UUID) -> list[list[uuid.UUID]]:
        low = func.least(Relationship.source_id, Relationship.target_id)
        high = func.greatest(Relationship.source_id, Relationship.target_id)
        result = await self.db.execute(
            select(array_agg(aggregate_order_by(Relationship.id, Relationship.id)))
            .where(Relationship.project_id == project_id)
            .group_by(low, high)
            .having(func.count(Relationship.id) > 1)
            .order_by(low, high)
        )
        return [list(ids) for ids in result.scalars().all()]

    async def merge_relationships(
        self, project_id: uuid.UUID, canonical_id: uuid.UUID, duplicate_ids: list[uuid.UUID]
    ) -> None:
        if not duplicate_ids:
            return
        await self.db.execute(
            update(RelationshipSource)
            .where(RelationshipSource.relationship_id.in_(duplicate_ids))
            .values(relationship_id=canonical_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(Relationship)
            .where(Relationship.project_id == project_id, Relationship.id.in_(duplicate_ids))
            .execution_options(synchronize_session=False)
        )
        await self.refresh_ranks([canonical_id])

    async def delete_orphans(self, project_id: uuid.UUID) -> tuple[int, int]:
        relationships = await self.db.execute(
            delete(Relationship)
            .where(
                Relationship.project_id == project_id,
                ~exists().where(RelationshipSource.relationship_id == Relationship.id),
            )
            .execution_options(synchronize_session=False)
        )
        entities = await self.db.execute(
            delete(Entity)
            .where(
                Entity.project_id == project_id,
                ~exists().where(EntitySource.entity_id == Entity.id),
            )
            .execution_options(synchronize_session=False)
        )
        return entities.rowcount or 0, relationships.rowcount or 0

    # =========================================================================
    # File removal
    # =========================================================================

    async def purge_file_units(
        self, project_id: uuid.UUID, file_ids: list[uuid.UUID]
    ) -> tuple[set[uuid.UUID], set[uuid.UUID]]:
        """
        Delete the text units of files; their sources go with them (FK cascade).

        Returns the ids of entities and relationships that lost sources.
        Items left without any source are removed by `delete_orphans`.
        """
        if not file_ids:
            return set(), set()
        units = select(TextUnit.id).where(
            TextUnit.project_id == project_id, TextUnit.project_file_id.in_(file_ids)
        )
        entity_ids = await self.db.execute(
            select(EntitySource.entity_id).where(EntitySource.text_unit_id.in_(units)).distinct()
        )
        relationship_ids = await self.db.execute(
            select(RelationshipSource.relationship_id).where(RelationshipSource.text_unit_id.in_(units)).distinct()
        )
        affected = set(entity_ids.scalars().all()), set(relationship_ids.scalars().all())

        await self.db.execute(
            delete(TextUnit)
            .where(TextUnit.project_id == project_id, TextUnit.project_file_id.in_(file_ids))
            .execution_options(synchronize_session=False)
        )
        self._entity_cache.clear()
        return affected

    # =========================================================================
    # Descriptions and embeddings
    # =========================================================================

    async def entity_description_inputs(self, entity_ids: Iterable[uuid.UUID]) -> list[DescriptionInput]:
        ids = sorted(set(entity_ids))
        if not ids:
            return []
        result = await self.db.execute(
            select(Entity.id, Entity.name, EntitySource.description)
            .join(EntitySource, EntitySource.entity_id == Entity.id)
            .where(Entity.id.in_(ids))
            .order_by(Entity.id, EntitySource.id)
        )
        grouped: dict[uuid.UUID, DescriptionInput] = {}
        for entity_id, name, description in result.all():
            grouped.setdefault(entity_id, DescriptionInput(entity_id, name, [])).source_descriptions.append(description)
        return list(grouped.values())

    async def relationship_description_inputs(
        self, relationship_ids: Iterable[uuid.UUID]
    ) -> list[DescriptionInput]:
        ids = sorted(set(relationship_ids))
        if not ids:
            return []
        source = aliased(Entity)
        target = aliased(Entity)
        result = await self.db.execute(
            select(Relationship.id, source.name, target.name, RelationshipSource.description)
            .join(source, source.id == Relationship.source_id)
            .join(target, target.id == Relationship.target_id)
            .join(RelationshipSource, RelationshipSource.relationship_id == Relationship.id)
            .where(Relationship.id.in_(ids))
            .order_by(Relationship.id, RelationshipSource.id)
        )
        grouped: dict[uuid.UUID, DescriptionInput] = {}
        for rel_id, source_name, target_name, description in result.all():
            grouped.setdefault(
                rel_id, DescriptionInput(rel_id, f"{source_name} -> {target_name}", [])
            ).source_descriptions.append(description)
        return list(grouped.values())

    async def update_entity_description(
        self, entity_id: uuid.UUID, description: str, embedding: list[float] | None
    ) -> None:
        await self.db.execute(
            update(Entity)
            .where(Entity.id == entity_id)
            .values(description=description, embedding=embedding)
            .execution_options(synchronize_session=False)
        )

    async def update_relationship_description(
        self, relationship_id: uuid.UUID, description: str, embedding: list[float] | None
    ) -> None:
        await self.db.execute(
            update(Relationship)
            .where(Relationship.id == relationship_id)
            .values(description=description, embedding=embedding)
            .execution_options(synchronize_session=False)
        )

    async def sources_without_embedding(
        self,
        entity_ids: Iterable[uuid.UUID],
        relationship_ids: Iterable[uuid.UUID],
    ) -> list[tuple[str, uuid.UUID, str]]:
        """(kind, source id, description) for sources of the given items lacking an embedding."""
        pending: list[tuple[str, uuid.UUID, str]] = []
        entity_ids = list(entity_ids)
        relationship_ids = list(relationship_ids)
        if entity_ids:
            result = await self.db.execute(
                select(EntitySource.id, EntitySource.description)
                .where(EntitySource.entity_id.in_(entity_ids), EntitySource.embedding.is_(None))
                .order_by(EntitySource.id)
            )
            pending.extend(("entity", source_id, text) for source_id, text in result.all())
        if relationship_ids:
            result = await self.db.execute(
                select(RelationshipSource.id, RelationshipSource.description)
                .where(
                    RelationshipSource.relationship_id.in_(relationship_ids),
                    RelationshipSource.embedding.is_(None),
                )
                .order_by(RelationshipSource.id)
            )
            pending.extend(("relationship", source_id, text) for source_id, text in result.all())
        return pending

    async def update_source_embedding(self, kind: str, source_id: uuid.UUID, embedding: list[float]) -> None:
        model = EntitySource if kind == "entity" else RelationshipSource
        await self.db.execute(
            update(model)
            .where(model.id == source_id)
            .values(embedding=embedding)
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Retrieval helpers
    # =========================================================================

    async def _nearest_entities(
        self,
        graph_id: uuid.UUID,
        embedding: list[float],
        limit: int,
        entity_type: str | None = None,
    ) -> list[Entity]:
        query = select(Entity).where(Entity.project_id == graph_id, Entity.embedding.is_not(None))
        if entity_type:
            query = query.where(Entity.type == entity_type.upper())
        query = query.order_by(Entity.embedding.cosine_distance(embedding)).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _relationships_touching(
        self, graph_id: uuid.UUID, entity_ids: list[uuid.UUID], limit: int
    ) -> list[tuple[Relationship, Entity, Entity]]:
        if not entity_ids:
            return []
        source = aliased(Entity)
        target = aliased(Entity)
        result = await self.db.execute(
            select(Relationship, source, target)
            .join(source, source.id == Relationship.source_id)
            .join(target, target.id == Relationship.target_id)
            .where(
                Relationship.project_id == graph_id,
                or_(Relationship.source_id.in_(entity_ids), Relationship.target_id.in_(entity_ids)),
            )
            .order_by(Relationship.rank.desc(), Relationship.id)
            .limit(limit)
        )
        return [(rel, src, tgt) for rel, src, tgt in result.all()]

    async def _sources_for(
        self,
        entity_ids: list[uuid.UUID],
        relationship_ids: list[uuid.UUID],
        embedding: list[float] | None,
        limit: int,
    ) -> list[SourceHit]:
        """Text units behind entities/relationships, nearest to the query first."""
        hits: dict[str, SourceHit] = {}

        async def collect(model, owner_column, owner_ids) -> None:
            if not owner_ids:
                return
            query = (
                select(model.description, TextUnit.public_id, TextUnit.text, ProjectFile.id, ProjectFile.name)
                .join(TextUnit, TextUnit.id == model.text_unit_id)
                .join(ProjectFile, ProjectFile.id == TextUnit.project_file_id)
                .where(owner_column.in_(owner_ids), ProjectFile.deleted.is_(False))
            )
            if embedding is not None:
                query = query.order_by(model.embedding.cosine_distance(embedding).nulls_last(), model.id)
            else:
                query = query.order_by(model.id)
            result = await self.db.execute(query.limit(limit))
            for description, unit_public_id, text, file_id, file_name in result.all():
                hits.setdefault(
                    unit_public_id,
                    SourceHit(
                        unit_public_id=unit_public_id,
                        file_id=str(file_id),
                        file_name=file_name,
                        text=text,
                        description=description,
                    ),
                )

        await collect(EntitySource, EntitySource.entity_id, entity_ids)
        await collect(RelationshipSource, RelationshipSource.relationship_id, relationship_ids)
        return list(hits.values())[:limit]

    async def _documents(self, file_ids: Iterable[str]) -> list[DocumentInfo]:
        ids = sorted({uuid.UUID(f) for f in file_ids})
        if not ids:
            return []
        result = await self.db.execute(
            select(ProjectFile.id, ProjectFile.name, ProjectFile.file_metadata)
            .where(ProjectFile.id.in_(ids))
            .order_by(ProjectFile.name)
        )
        return [DocumentInfo(str(fid), name, metadata) for fid, name, metadata in result.all()]

    @staticmethod
    def _entity_hit(entity: Entity) -> EntityHit:
        return EntityHit(entity.public_id, entity.name, entity.type, entity.description)

    @staticmethod
    def _relationship_hit(rel: Relationship, source: Entity, target: Entity) -> RelationshipHit:
        return RelationshipHit(rel.public_id, source.name, target.name, rel.description, rel.rank)

    # =========================================================================
    # Query contexts
    # =========================================================================

    async def get_local_query_context(
        self,
        query: str,
        embedding: list[float],
        graph_id: uuid.UUID,
        trace: QueryTrace,
    ) -> str:
        try:
            entities = await self._nearest_entities(graph_id, embedding, settings.query_entity_limit)
            if not entities:
                return ""
            entity_ids = [e.id for e in entities]
            selected = set(entity_ids)

            touching = await self._relationships_touching(graph_id, entity_ids, settings.query_entity_limit * 3)
            relationships = []
            connecting: dict[uuid.UUID, Entity] = {}
            for rel, src, tgt in touching:
                relationships.append(self._relationship_hit(rel, src, tgt))
                for endpoint in (src, tgt):
                    if endpoint.id not in selected:
                        connecting.setdefault(endpoint.id, endpoint)

            sources = await self._sources_for(
                entity_ids,
                [rel.id for rel, _, _ in touching],
                embedding,
                settings.query_source_limit,
            )
            documents = await self._documents(s.file_id for s in sources)
        except SQLAlchemyError as e:
            raise RetrievalError(f"Local context query failed: {e}") from e

        trace.queried_entity(*(e.public_id for e in entities), *(e.public_id for e in connecting.values()))
        trace.queried_relationship(*(r.public_id for r in relationships))
        trace.considered_source(*(s.file_id for s in sources))
        trace.used_source(*(d.file_id for d in documents))

        logger.debug(
            "Local context built",
            graph_id=str(graph_id),
            entities=len(entities),
            relationships=len(relationships),
            sources=len(sources),
        )
        return render_local_context(
            [self._entity_hit(e) for e in entities],
            relationships,
            [self._entity_hit(e) for e in connecting.values()],
            sources,
            documents,
        )

    async def get_global_query_context(
        self,
        query: str,
        embedding: list[float],
        graph_id: uuid.UUID,
        trace: QueryTrace,
    ) -> str:
        limit = settings.query_entity_limit
        try:
            source = aliased(Entity)
            target = aliased(Entity)
            rel_result = await self.db.execute(
                select(Relationship, source, target)
                .join(source, source.id == Relationship.source_id)
                .join(target, target.id == Relationship.target_id)
                .where(Relationship.project_id == graph_id)
                .order_by(Relationship.rank.desc(), Relationship.id)
                .limit(limit * 2)
            )
            top = rel_result.all()

            degree = (
                select(Entity, func.count(Relationship.id).label("degree"))
                .join(
                    Relationship,
                    or_(Relationship.source_id == Entity.id, Relationship.target_id == Entity.id),
                )
                .where(Entity.project_id == graph_id)
                .group_by(Entity.id)
                .order_by(func.count(Relationship.id).desc(), Entity.id)
                .limit(limit)
            )
            hubs = [(entity, count) for entity, count in (await self.db.execute(degree)).all()]

            type_counts = await self.get_entity_types(graph_id)
            if not top and not hubs and not type_counts:
                return ""

            sources = await self._sources_for(
                [], [rel.id for rel, _, _ in top], embedding, settings.query_source_limit // 2 or 1
            )
        except SQLAlchemyError as e:
            raise RetrievalError(f"Global context query failed: {e}") from e

        relationships = [self._relationship_hit(rel, src, tgt) for rel, src, tgt in top]
        trace.queried_relationship(*(r.public_id for r in relationships))
        trace.queried_entity(*(e.public_id for e, _ in hubs))
        trace.considered_source(*(s.file_id for s in sources))
        trace.used_source(*(s.file_id for s in sources))

        return render_global_context(
            relationships,
            [(self._entity_hit(e), count) for e, count in hubs],
            type_counts,
            sources,
        )

    # =========================================================================
    # Agent tool queries
    # =========================================================================

    async def search_entities(self, graph_id: uuid.UUID, embedding: list[float], limit: int) -> list[EntityHit]:
        return [self._entity_hit(e) for e in await self._nearest_entities(graph_id, embedding, limit)]

    async def search_entities_by_type(
        self, graph_id: uuid.UUID, entity_type: str, embedding: list[float], limit: int
    ) -> list[EntityHit]:
        entities = await self._nearest_entities(graph_id, embedding, limit, entity_type=entity_type)
        return [self._entity_hit(e) for e in entities]

    async def _entity_by_public_id(self, graph_id: uuid.UUID, public_id: str) -> Entity | None:
        result = await self.db.execute(
            select(Entity).where(Entity.project_id == graph_id, Entity.public_id == public_id)
        )
        return result.scalar_one_or_none()

    async def get_entity_neighbours(
        self, graph_id: uuid.UUID, entity_public_id: str, limit: int
    ) -> list[NeighbourHit]:
        entity = await self._entity_by_public_id(graph_id, entity_public_id)
        if entity is None:
            return []
        neighbours = []
        for rel, src, tgt in await self._relationships_touching(graph_id, [entity.id], limit):
            other = tgt if src.id == entity.id else src
            neighbours.append(NeighbourHit(self._relationship_hit(rel, src, tgt), self._entity_hit(other)))
        return neighbours

    async def get_entity_sources(
        self, graph_id: uuid.UUID, entity_public_id: str, limit: int
    ) -> list[SourceHit]:
        entity = await self._entity_by_public_id(graph_id, entity_public_id)
        if entity is None:
            return []
        return await self._sources_for([entity.id], [], None, limit)

    async def get_relationship_sources(
        self, graph_id: uuid.UUID, relationship_public_id: str, limit: int
    ) -> list[SourceHit]:
        result = await self.db.execute(
            select(Relationship.id).where(
                Relationship.project_id == graph_id,
                Relationship.public_id == relationship_public_id,
            )
        )
        relationship_id = result.scalar_one_or_none()
        if relationship_id is None:
            return []
        return await self._sources_for([], [relationship_id], None, limit)

    async def get_entity_types(self, graph_id: uuid.UUID) -> list[tuple[str, int]]:
        result = await self.db.execute(
            select(Entity.type, func.count(Entity.id))
            .where(Entity.project_id == graph_id)
            .group_by(Entity.type)
            .order_by(func.count(Entity.id).desc(), Entity.type)
        )
        return [(entity_type, count) for entity_type, count in result.all()]

    # =========================================================================
    # Stats
    # =========================================================================

    async def graph_exists(self, graph_id: uuid.UUID) -> bool:
        result = await self.db.execute(select(exists().where(Project.id == graph_id)))
        return bool(result.scalar())

    async def has_graph(self, project_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(exists().where(Entity.project_id == project_id))
        )
        return bool(result.scalar())
